from __future__ import annotations

import json
import random
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from hub import Hub
from presence import PresenceRegistry
from store import MemoryStore
from typing_tracker import TypingTracker


class FakeConnection:
    """Stands in for a websockets ServerConnection; records what it is sent."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.state = State.OPEN
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None

    async def send(self, msg: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(msg))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_code = code

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [e for e in self.sent if e["type"] == kind]

    def __repr__(self) -> str:
        return f"<FakeConnection {self.name}>"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_hub(clock: FakeClock):
    """Build a fresh hub; call inside the running event loop."""

    def _make(history_limit: int = 50, outbox_size: int = 256) -> Hub:
        store = MemoryStore()
        registry = PresenceRegistry(store, rng=random.Random(7))
        tracker = TypingTracker(expiry_ms=3000, sweep_interval_ms=1000, clock=clock)
        return Hub(store, registry, tracker, history_limit=history_limit, outbox_size=outbox_size)

    return _make
