"""
Common helpers for message formats, constants and settings.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 2024
WS_PATH = "/ws"

MAX_MESSAGE_LENGTH = 500
HISTORY_LIMIT = 50
MAX_STORED_MESSAGES = 1000
TYPING_EXPIRY_MS = 3000
TYPING_SWEEP_INTERVAL_MS = 1000
OUTBOX_SIZE = 256

SYSTEM_AUTHOR = "System"
KIND_MESSAGE = "message"
KIND_SYSTEM = "system"


# ---- Errors ----

class ChatError(Exception):
    """Base class for errors reported back to a single connection."""


class ValidationError(ChatError):
    pass


class ProtocolError(ChatError):
    pass


# ---- Settings ----

def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def _env_log_level(name: str, default: str) -> str:
    level = os.environ.get(name, default).strip().upper() or default
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"{name} must be a logging level such as DEBUG or INFO, got {level!r}")
    return level


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    history_limit: int = HISTORY_LIMIT
    max_messages: int = MAX_STORED_MESSAGES
    typing_expiry_ms: int = TYPING_EXPIRY_MS
    typing_sweep_ms: int = TYPING_SWEEP_INTERVAL_MS
    outbox_size: int = OUTBOX_SIZE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.environ.get("CHAT_HOST", DEFAULT_HOST),
            port=_env_int("CHAT_PORT", DEFAULT_PORT),
            history_limit=_env_int("CHAT_HISTORY_LIMIT", HISTORY_LIMIT),
            max_messages=_env_int("CHAT_MAX_MESSAGES", MAX_STORED_MESSAGES),
            typing_expiry_ms=_env_int("CHAT_TYPING_EXPIRY_MS", TYPING_EXPIRY_MS),
            typing_sweep_ms=_env_int("CHAT_TYPING_SWEEP_MS", TYPING_SWEEP_INTERVAL_MS),
            outbox_size=_env_int("CHAT_OUTBOX_SIZE", OUTBOX_SIZE),
            log_level=_env_log_level("CHAT_LOG_LEVEL", "INFO"),
        )


# ---- Wire message helpers (JSON over WebSocket) ----

def encode(obj: dict) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)

def decode(s: str) -> dict:
    return json.loads(s)

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def validate_body(content: Any) -> str:
    """Return the message body unchanged, or raise ValidationError."""
    if not isinstance(content, str):
        raise ValidationError("Message content must be a string")
    if len(content) < 1:
        raise ValidationError("Message cannot be empty")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return content


# ---- Inbound frames ----
# Client -> Server:
# {"type":"message","content":"Hello world"}
# {"type":"typing","isTyping":true}

@dataclass(frozen=True)
class ChatFrame:
    content: str


@dataclass(frozen=True)
class TypingFrame:
    is_typing: bool


InboundFrame = Union[ChatFrame, TypingFrame]


def parse_frame(raw: Union[str, bytes]) -> InboundFrame:
    """Decode one client frame into a ChatFrame or TypingFrame.

    Raises ProtocolError for anything that is not a JSON object with a known
    ``type``. Body length is not checked here; that is the hub's job.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError("Invalid message format")
    try:
        data = decode(raw)
    except (ValueError, RecursionError):
        # Deeply nested arrays blow the decoder's recursion limit.
        raise ProtocolError("Invalid message format")
    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format")

    kind = data.get("type")
    if kind == "message":
        return ChatFrame(content=data.get("content"))
    elif kind == "typing":
        is_typing = data.get("isTyping")
        if not isinstance(is_typing, bool):
            raise ProtocolError("isTyping must be a boolean")
        return TypingFrame(is_typing=is_typing)
    raise ProtocolError(f"Unknown message type: {kind!r}")


# ---- Outbound events ----
# Server -> Client:
# {"type":"init","messages":[...],"identity":{"id":"...","displayName":"Anonymous_1234"},...}
# {"type":"message","message":{"id":"...","content":"Hi","authorDisplayName":"...","kind":"message","createdAt":"..."}}
# {"type":"userCount","count":3}
# {"type":"typing","username":"Anonymous_1234","isTyping":true}
# {"type":"error","reason":"..."}

def init_event(messages: List[Dict[str, Any]], identity: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "init",
        "messages": messages,
        "identity": identity,
        "username": identity["displayName"],
        "userId": identity["id"],
    }

def message_event(message: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "message", "message": message}

def user_count_event(count: int) -> Dict[str, Any]:
    return {"type": "userCount", "count": count}

def typing_event(username: str, is_typing: bool) -> Dict[str, Any]:
    return {"type": "typing", "username": username, "isTyping": is_typing}

def error_event(reason: str) -> Dict[str, Any]:
    return {"type": "error", "reason": reason}
