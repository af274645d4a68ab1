"""
Key Cache: process-local identity → active key set.

Entries are immutable and only ever replaced wholesale, so a reader never
observes a half-updated entry. The reconciliation engine is the only writer.

delete() also stamps the identity with a new invalidation generation. A
refresh captures the generation before it reads the store and only installs
its result if the generation is unchanged, so a refresh that read the store
before a write cannot put the pre-write key set back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


@dataclass(frozen=True)
class CacheEntry:
    key_set: Tuple[str, ...]
    hard_expiry: float
    last_refreshed_at: float

    def is_usable(self, now: float) -> bool:
        return now < self.hard_expiry

    def age(self, now: float) -> float:
        return now - self.last_refreshed_at


class KeyCache:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CacheEntry] = {}
        # identity -> (generation, invalidated_at)
        self._invalidations: Dict[str, Tuple[int, float]] = {}
        self._generation = 0
        self._clock = clock

    def get(self, identity: str) -> Optional[CacheEntry]:
        return self._entries.get(identity)

    def set(self, identity: str, entry: CacheEntry) -> None:
        self._entries[identity] = entry

    def delete(self, identity: str) -> None:
        self._entries.pop(identity, None)
        self._generation += 1
        self._invalidations[identity] = (self._generation, self._clock())

    def generation(self, identity: str) -> int:
        """Generation of the last delete() for *identity*, 0 if none is remembered."""
        mark = self._invalidations.get(identity)
        return mark[0] if mark else 0

    def clear(self) -> None:
        self._entries.clear()
        self._invalidations.clear()

    def sweep(self, now: float, max_age_s: float) -> int:
        """Drop entries refreshed more than *max_age_s* ago. Returns count removed.

        Invalidation marks older than *max_age_s* are forgotten too.
        """
        stale = [ident for ident, e in self._entries.items() if e.age(now) >= max_age_s]
        for ident in stale:
            del self._entries[ident]
        expired = [ident for ident, (_, at) in self._invalidations.items() if now - at >= max_age_s]
        for ident in expired:
            del self._invalidations[ident]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        return identity in self._entries
