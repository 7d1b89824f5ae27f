"""
Typing indicator tracking with automatic expiry.

A display name is either idle (no record) or typing (one record). Clients
keep re-sending ``isTyping: true`` while composing; a record that is not
refreshed within the expiry window is removed by the periodic sweep, so a
client that vanished mid-sentence does not stay "typing" forever.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List

from common import TYPING_EXPIRY_MS, TYPING_SWEEP_INTERVAL_MS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypingSignal:
    display_name: str
    is_typing: bool
    last_seen_at: float


class TypingTracker:
    def __init__(
        self,
        expiry_ms: int = TYPING_EXPIRY_MS,
        sweep_interval_ms: int = TYPING_SWEEP_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.expiry = expiry_ms / 1000.0
        self.sweep_interval = sweep_interval_ms / 1000.0
        self._clock = clock
        self._typing: Dict[str, TypingSignal] = {}
        self._lock = asyncio.Lock()

    async def set_typing(self, display_name: str, is_typing: bool) -> TypingSignal:
        now = self._clock()
        async with self._lock:
            if not is_typing:
                self._typing.pop(display_name, None)
                return TypingSignal(display_name, False, now)
            if display_name not in self._typing:
                logger.debug("%s started typing", display_name)
            signal = TypingSignal(display_name, True, now)
            self._typing[display_name] = signal
            return signal

    async def clear(self, display_name: str) -> bool:
        async with self._lock:
            return self._typing.pop(display_name, None) is not None

    async def sweep(self) -> List[TypingSignal]:
        """Drop stale records and return them as stop signals."""
        now = self._clock()
        async with self._lock:
            stale = [s for s in self._typing.values() if now - s.last_seen_at > self.expiry]
            for signal in stale:
                del self._typing[signal.display_name]
        if stale:
            logger.debug("Expired typing state for %s", ", ".join(s.display_name for s in stale))
        return [replace(s, is_typing=False) for s in stale]

    def is_typing(self, display_name: str) -> bool:
        return display_name in self._typing

    def typing_names(self) -> List[str]:
        return sorted(self._typing)

    async def run(self, on_expired: Callable[[List[TypingSignal]], Awaitable[None]]) -> None:
        """Sweep forever at ``sweep_interval``; cancel the task to stop."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            expired = await self.sweep()
            if expired:
                try:
                    await on_expired(expired)
                except Exception:
                    logger.exception("Typing expiry callback failed")
