"""
Broadcast hub: the single fan-out point for every chat event.

Each live connection gets an Outbox (a bounded queue drained by its own
writer task), so a stalled client only ever backs up its own queue. Events
are enqueued while holding the hub lock, which makes the order every client
sees the same as the order the store accepted them.
"""

import asyncio
import logging
from typing import Any, Dict, Hashable, List, Optional

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from common import (
    HISTORY_LIMIT,
    KIND_MESSAGE,
    KIND_SYSTEM,
    OUTBOX_SIZE,
    SYSTEM_AUTHOR,
    ValidationError,
    encode,
    error_event,
    init_event,
    message_event,
    typing_event,
    user_count_event,
    validate_body,
)
from presence import Identity, PresenceRegistry
from store import MemoryStore
from typing_tracker import TypingSignal, TypingTracker

logger = logging.getLogger(__name__)

CLOSE_TRY_AGAIN_LATER = 1013


class Outbox:
    """Bounded send queue for one connection.

    A client whose queue fills up is disconnected instead of
    silently missing events; it gets a fresh snapshot when it reconnects.
    """

    def __init__(self, handle: Any, size: int = OUTBOX_SIZE):
        self.handle = handle
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=size)
        self.overflowed = False
        self.task = asyncio.create_task(self._run())
        self._evicting: Optional[asyncio.Task] = None

    def put(self, msg: str) -> bool:
        if self.overflowed or self.handle.state is not State.OPEN:
            return False
        try:
            self.queue.put_nowait(msg)
        except asyncio.QueueFull:
            logger.warning("Outbox full for %r, closing slow connection", self.handle)
            self.overflowed = True
            self._evicting = asyncio.create_task(self._evict())
            return False
        return True

    async def _evict(self) -> None:
        try:
            await self.handle.close(CLOSE_TRY_AGAIN_LATER, "Client too slow")
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("Closing slow connection %r failed", self.handle)

    async def _run(self) -> None:
        while True:
            msg = await self.queue.get()
            try:
                await self.handle.send(msg)
            except ConnectionClosed:
                logger.debug("Connection %r closed, event dropped", self.handle)
            except Exception:
                logger.exception("Delivery to %r failed", self.handle)
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()


class Hub:
    def __init__(
        self,
        store: MemoryStore,
        registry: PresenceRegistry,
        tracker: TypingTracker,
        history_limit: int = HISTORY_LIMIT,
        outbox_size: int = OUTBOX_SIZE,
    ):
        self.store = store
        self.registry = registry
        self.tracker = tracker
        self.history_limit = history_limit
        self.outbox_size = outbox_size
        self._outboxes: Dict[Hashable, Outbox] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # ---- Lifecycle ----

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self.tracker.run(self._on_typing_expired))

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        outboxes = list(self._outboxes.values())
        self._outboxes.clear()
        for outbox in outboxes:
            await outbox.close()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to its connection."""
        await asyncio.gather(*(o.queue.join() for o in list(self._outboxes.values())))

    @property
    def connection_count(self) -> int:
        return len(self._outboxes)

    # ---- Delivery ----

    def _send(self, handle: Hashable, payload: Dict[str, Any]) -> None:
        outbox = self._outboxes.get(handle)
        if outbox is not None:
            outbox.put(encode(payload))

    def _broadcast(self, payload: Dict[str, Any], except_handle: Optional[Hashable] = None) -> None:
        msg = encode(payload)
        for handle, outbox in list(self._outboxes.items()):
            if handle is except_handle:
                continue
            outbox.put(msg)

    async def _broadcast_system(self, content: str) -> None:
        notice = await self.store.append_message(content, SYSTEM_AUTHOR, KIND_SYSTEM)
        self._broadcast(message_event(notice.to_dict()))

    async def _broadcast_user_count(self) -> None:
        self._broadcast(user_count_event(await self.registry.active_count()))

    async def send_error(self, handle: Hashable, reason: str) -> None:
        async with self._lock:
            self._send(handle, error_event(reason))

    # ---- Connection events ----

    async def on_connect(self, handle: Hashable) -> Identity:
        async with self._lock:
            identity = await self.registry.register(handle)
            if handle not in self._outboxes:
                self._outboxes[handle] = Outbox(handle, self.outbox_size)
            history = await self.store.list_recent_messages(self.history_limit)
            self._send(handle, init_event([m.to_dict() for m in history], identity.to_dict()))
            await self._broadcast_system(f"{identity.display_name} joined the chat")
            await self._broadcast_user_count()
        return identity

    async def on_message(self, handle: Hashable, body: Any) -> None:
        async with self._lock:
            participant = self.registry.participant(handle)
            if participant is None:
                self._send(handle, error_event("Not connected"))
                return
            try:
                validate_body(body)
            except ValidationError as e:
                logger.info("Rejected message from %s: %s", participant.identity.display_name, e)
                self._send(handle, error_event(str(e)))
                return
            message = await self.store.append_message(body, participant.identity.display_name, KIND_MESSAGE)
            # The sender gets its own message back too.
            self._broadcast(message_event(message.to_dict()))

    async def on_typing(self, handle: Hashable, is_typing: bool) -> None:
        async with self._lock:
            participant = self.registry.participant(handle)
            if participant is None:
                self._send(handle, error_event("Not connected"))
                return
            signal = await self.tracker.set_typing(participant.identity.display_name, is_typing)
            self._broadcast(typing_event(signal.display_name, signal.is_typing), except_handle=handle)

    async def on_disconnect(self, handle: Hashable) -> None:
        async with self._lock:
            outbox = self._outboxes.pop(handle, None)
            participant = await self.registry.deregister(handle)
            if participant is not None:
                name = participant.identity.display_name
                if await self.tracker.clear(name):
                    self._broadcast(typing_event(name, False))
                await self._broadcast_system(f"{name} left the chat")
                await self._broadcast_user_count()
        if outbox is not None:
            await outbox.close()

    async def _on_typing_expired(self, signals: List[TypingSignal]) -> None:
        async with self._lock:
            for signal in signals:
                # Typing may have resumed between the sweep and now.
                if self.tracker.is_typing(signal.display_name):
                    continue
                owner = self.registry.handle_for(signal.display_name)
                self._broadcast(typing_event(signal.display_name, False), except_handle=owner)
