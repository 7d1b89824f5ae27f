"""
Presence registry: which connection belongs to which anonymous identity.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional

from common import utc_now_iso
from store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "displayName": self.display_name}


@dataclass(frozen=True)
class Participant:
    handle: Hashable
    identity: Identity
    joined_at: str


NAME_ATTEMPTS_PER_WIDTH = 10


def generate_display_name(rng: random.Random, digits: int = 4) -> str:
    return f"Anonymous_{rng.randint(10 ** (digits - 1), 10 ** digits - 1)}"


class PresenceRegistry:
    def __init__(self, store: MemoryStore, rng: Optional[random.Random] = None):
        self._store = store
        self._rng = rng or random.Random()
        self._participants: Dict[Hashable, Participant] = {}
        self._lock = asyncio.Lock()

    async def register(self, handle: Hashable) -> Identity:
        async with self._lock:
            existing = self._participants.get(handle)
            if existing is not None:
                return existing.identity
            taken = {p.identity.display_name for p in self._participants.values()}
            digits = 4
            name = generate_display_name(self._rng, digits)
            attempts = 1
            while name in taken:
                if attempts % NAME_ATTEMPTS_PER_WIDTH == 0:
                    digits += 1
                    logger.warning("Display names crowded, widening to %d digits", digits)
                name = generate_display_name(self._rng, digits)
                attempts += 1
            user = await self._store.create_active_user(name)
            identity = Identity(id=user.id, display_name=user.display_name)
            self._participants[handle] = Participant(handle, identity, utc_now_iso())
        logger.info("Registered %s", identity.display_name)
        return identity

    async def deregister(self, handle: Hashable) -> Optional[Participant]:
        """Remove the participant for ``handle``; unknown handles return None."""
        async with self._lock:
            participant = self._participants.pop(handle, None)
            if participant is None:
                return None
            await self._store.deactivate_user(participant.identity.id)
        logger.info("Deregistered %s", participant.identity.display_name)
        return participant

    async def active_count(self) -> int:
        return await self._store.count_active_users()

    def participant(self, handle: Hashable) -> Optional[Participant]:
        return self._participants.get(handle)

    def handle_for(self, display_name: str) -> Optional[Hashable]:
        for participant in self._participants.values():
            if participant.identity.display_name == display_name:
                return participant.handle
        return None

    def participants(self) -> List[Participant]:
        return list(self._participants.values())
