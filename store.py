"""
In-memory store for chat messages and anonymous users.

Nothing here survives a restart. The store is built once at startup and
handed to whoever needs it.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from common import (
    HISTORY_LIMIT,
    KIND_MESSAGE,
    KIND_SYSTEM,
    MAX_STORED_MESSAGES,
    utc_now_iso,
    validate_body,
)


@dataclass(frozen=True)
class StoredMessage:
    id: str
    content: str
    author_display_name: str
    kind: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "authorDisplayName": self.author_display_name,
            "kind": self.kind,
            "createdAt": self.created_at,
        }


@dataclass
class StoredUser:
    id: str
    display_name: str
    is_active: bool
    joined_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "isActive": self.is_active,
            "joinedAt": self.joined_at,
        }


class MemoryStore:
    """Append-only message log plus a table of users keyed by id."""

    def __init__(self, max_messages: int = MAX_STORED_MESSAGES):
        self._messages: Deque[StoredMessage] = deque(maxlen=max_messages or None)
        self._users: Dict[str, StoredUser] = {}
        self._lock = asyncio.Lock()

    # ---- Messages ----

    async def append_message(self, content: str, author_name: str, kind: str = KIND_MESSAGE) -> StoredMessage:
        if kind not in (KIND_MESSAGE, KIND_SYSTEM):
            raise ValueError(f"Unknown message kind: {kind!r}")
        validate_body(content)
        message = StoredMessage(
            id=str(uuid.uuid4()),
            content=content,
            author_display_name=author_name,
            kind=kind,
            created_at=utc_now_iso(),
        )
        async with self._lock:
            self._messages.append(message)
        return message

    async def list_recent_messages(self, limit: int = HISTORY_LIMIT) -> List[StoredMessage]:
        """Most recent ``limit`` messages, oldest first."""
        if limit <= 0:
            return []
        async with self._lock:
            messages = list(self._messages)
        return messages[-limit:]

    # ---- Users ----

    async def create_active_user(self, display_name: str) -> StoredUser:
        user = StoredUser(
            id=str(uuid.uuid4()),
            display_name=display_name,
            is_active=True,
            joined_at=utc_now_iso(),
        )
        async with self._lock:
            self._users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[StoredUser]:
        async with self._lock:
            return self._users.get(user_id)

    async def deactivate_user(self, user_id: str) -> None:
        # Anonymous users are never seen again once they leave, so the
        # record is dropped rather than kept around flagged inactive.
        async with self._lock:
            user = self._users.pop(user_id, None)
            if user is not None:
                user.is_active = False

    async def list_active_users(self) -> List[StoredUser]:
        async with self._lock:
            return [u for u in self._users.values() if u.is_active]

    async def count_active_users(self) -> int:
        async with self._lock:
            return sum(1 for u in self._users.values() if u.is_active)
