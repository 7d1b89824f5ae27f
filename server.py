#!/usr/bin/env python3
import asyncio
import logging
from http import HTTPStatus
from typing import Any, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from common import (
    ChatFrame,
    ProtocolError,
    Settings,
    TypingFrame,
    WS_PATH,
    encode,
    parse_frame,
)
from hub import Hub
from presence import PresenceRegistry
from store import MemoryStore
from typing_tracker import TypingTracker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class ChatServer:
    """Wires the store, registry, typing tracker and hub to the transport."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[MemoryStore] = None):
        self.settings = settings or Settings()
        self.store = store or MemoryStore(self.settings.max_messages)
        self.registry = PresenceRegistry(self.store)
        self.tracker = TypingTracker(self.settings.typing_expiry_ms, self.settings.typing_sweep_ms)
        self.hub = Hub(
            self.store,
            self.registry,
            self.tracker,
            self.settings.history_limit,
            self.settings.outbox_size,
        )

    # ---- WebSocket ----

    async def dispatch(self, ws: ServerConnection, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except ProtocolError as e:
            logger.info("Bad frame from %s: %s", ws.remote_address, e)
            await self.hub.send_error(ws, str(e))
            return

        if isinstance(frame, ChatFrame):
            await self.hub.on_message(ws, frame.content)
        elif isinstance(frame, TypingFrame):
            await self.hub.on_typing(ws, frame.is_typing)
        else:
            await self.hub.send_error(ws, "Unsupported frame")

    async def handler(self, ws: ServerConnection) -> None:
        """Handles the entire lifecycle of a client connection."""
        logger.info("New connection from %s", ws.remote_address)
        try:
            await self.hub.on_connect(ws)
            async for raw_message in ws:
                await self.dispatch(ws, raw_message)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("Unexpected error for %s", ws.remote_address)
        finally:
            # This block ALWAYS runs when the handler exits, ensuring cleanup.
            await self.hub.on_disconnect(ws)
            logger.info("Connection from %s closed", ws.remote_address)

    # ---- REST ----

    def _json(self, ws: ServerConnection, status: HTTPStatus, payload: Any) -> Response:
        response = ws.respond(status, encode(payload))
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json; charset=utf-8"
        return response

    async def process_request(self, ws: ServerConnection, request: Request) -> Optional[Response]:
        path = request.path.split("?", 1)[0]
        if path == WS_PATH:
            return None
        if path == "/api/messages":
            try:
                messages = await self.store.list_recent_messages(self.settings.history_limit)
            except Exception:
                logger.exception("Failed to fetch messages")
                return self._json(ws, HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Failed to fetch messages"})
            return self._json(ws, HTTPStatus.OK, [m.to_dict() for m in messages])
        if path == "/api/users/active":
            try:
                users = await self.store.list_active_users()
            except Exception:
                logger.exception("Failed to fetch active users")
                return self._json(ws, HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Failed to fetch active users"})
            return self._json(ws, HTTPStatus.OK, {"count": len(users), "users": [u.to_dict() for u in users]})
        return self._json(ws, HTTPStatus.NOT_FOUND, {"error": "Not found"})

    def serve(self, host: Optional[str] = None, port: Optional[int] = None):
        return serve(
            self.handler,
            host if host is not None else self.settings.host,
            port if port is not None else self.settings.port,
            process_request=self.process_request,
            ping_interval=20,
            ping_timeout=20,
            max_queue=64,
        )


async def main():
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    chat = ChatServer(settings)
    logger.info("Starting Chat Server on ws://%s:%d%s", settings.host, settings.port, WS_PATH)
    async with chat.serve():
        await chat.hub.start()
        try:
            await asyncio.Future()  # run forever
        finally:
            await chat.hub.stop()

def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nServer stopped gracefully.")

if __name__ == "__main__":
    run()
