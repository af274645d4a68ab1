"""
Rate Limiter: per-identity cooldown + single-flight guard.

Layers:
  1. Cooldown:      per-identity next-allowed time (panel buttons: 5 s)
  2. Single-flight: per (identity, operation kind) in-flight marker.
                    A second start of the same kind is rejected outright,
                    never queued.

Implementation: in-memory maps owned by one event loop, so no locking.
Resets on restart (the document store stays the source of truth).
"""
from __future__ import annotations

import enum
import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Tuple

from keyledger.core.errors import OperationInProgress

logger = logging.getLogger(__name__)


class OperationKind(str, enum.Enum):
    REDEEM = "redeem"
    RESET_DEVICE = "reset_device"
    REVOKE = "revoke"
    SET_DEVICE_LIMIT = "set_device_limit"
    WHITELIST = "whitelist"
    DENYLIST = "denylist"
    BACKGROUND_REFRESH = "background_refresh"


class RateLimiter:
    """Cooldowns and in-flight markers for identities."""

    def __init__(
        self,
        inflight_ceiling_s: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.inflight_ceiling_s = inflight_ceiling_s
        self._clock = clock
        # identity → next allowed time
        self._cooldowns: Dict[str, float] = {}
        # (identity, kind) → started at
        self._in_flight: Dict[Tuple[str, OperationKind], float] = {}

    # -- cooldowns ---------------------------------------------------------

    def check_cooldown(self, identity: str) -> float:
        """Return seconds remaining on the identity's cooldown, or 0.0 if clear."""
        until = self._cooldowns.get(identity)
        if until is None:
            return 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            self._cooldowns.pop(identity, None)
            return 0.0
        return remaining

    def set_cooldown(self, identity: str, duration_s: float) -> None:
        """Block the identity for *duration_s*, overwriting any prior cooldown."""
        self._cooldowns[identity] = self._clock() + duration_s

    # -- single flight -----------------------------------------------------

    def start_operation(self, identity: str, kind: OperationKind) -> bool:
        """Set the in-flight marker. Returns False, changing nothing, if already set."""
        key = (identity, OperationKind(kind))
        if key in self._in_flight:
            return False
        self._in_flight[key] = self._clock()
        return True

    def end_operation(self, identity: str, kind: OperationKind) -> None:
        self._in_flight.pop((identity, OperationKind(kind)), None)

    def is_in_flight(self, identity: str, kind: OperationKind) -> bool:
        return (identity, OperationKind(kind)) in self._in_flight

    @contextmanager
    def guard(self, identity: str, kind: OperationKind) -> Iterator[None]:
        """Hold the marker for the block; raise OperationInProgress if taken.

        The marker is released on every exit path.
        """
        if not self.start_operation(identity, kind):
            raise OperationInProgress(identity, OperationKind(kind).value)
        try:
            yield
        finally:
            self.end_operation(identity, kind)

    # -- sweeping ----------------------------------------------------------

    def sweep_cooldowns(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [ident for ident, until in self._cooldowns.items() if until <= now]
        for ident in expired:
            del self._cooldowns[ident]
        return len(expired)

    def sweep_in_flight(self, now: float | None = None) -> int:
        """Release markers older than the ceiling (a path that never released)."""
        now = self._clock() if now is None else now
        abandoned = [k for k, started in self._in_flight.items() if now - started >= self.inflight_ceiling_s]
        for key in abandoned:
            logger.warning("Releasing abandoned in-flight marker: identity=%s kind=%s", key[0], key[1].value)
            del self._in_flight[key]
        return len(abandoned)

    @property
    def cooldown_count(self) -> int:
        return len(self._cooldowns)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)
