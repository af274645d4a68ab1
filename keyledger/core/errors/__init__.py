"""
Error code system.

KeyLedgerError is the base exception for all structured errors. Each subclass
is tied to a code in registry.yaml, and the error middleware turns it into a
structured JSON response using the registry's safe message.

Usage:
    from keyledger.core.errors import KeyNotFound
    raise KeyNotFound("VORAHUB-3FA91C-0B7E22-D41A90")

``detail`` and ``context`` are internal (logs only). ``public`` holds the
only values a safe message may interpolate, e.g. the display label of the
current holder of an already-bound key.
"""

from __future__ import annotations

import math
import re

CODE_PATTERN = re.compile(r"^KL-[A-Z]{2,6}-\d{3}$")


class KeyLedgerError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "KL-KEY-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
        public: Values safe to render into the user-facing message.
    """

    code: str = "KL-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
        public: dict | None = None,
    ) -> None:
        code = code or type(self).code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        self.public = public or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InvalidRequest(KeyLedgerError):
    code = "KL-API-001"


class InvalidKeyFormat(KeyLedgerError):
    """Lexical rejection; raised before any store I/O."""

    code = "KL-KEY-001"


class KeyAlreadyBound(KeyLedgerError):
    code = "KL-KEY-002"

    def __init__(self, key: str, holder_label: str | None) -> None:
        super().__init__(
            detail=f"key {key} already bound",
            context={"key": key},
            public={"holder": holder_label or "Unknown"},
        )
        self.key = key
        self.holder_label = holder_label


class KeyNotFound(KeyLedgerError):
    code = "KL-KEY-003"

    def __init__(self, key: str) -> None:
        super().__init__(detail=f"key {key} not found", context={"key": key})
        self.key = key


class IdentityDenylisted(KeyLedgerError):
    code = "KL-ACC-001"

    def __init__(self, identity: str) -> None:
        super().__init__(detail=f"identity {identity} is denylisted", context={"identity": identity})
        self.identity = identity


class OperationInProgress(KeyLedgerError):
    """Single-flight rejection. A control-flow signal, not a fault."""

    code = "KL-RATE-001"

    def __init__(self, identity: str, kind: str) -> None:
        super().__init__(
            detail=f"{kind} already in progress for {identity}",
            context={"identity": identity, "kind": kind},
        )
        self.identity = identity
        self.kind = kind


class CooldownActive(KeyLedgerError):
    code = "KL-RATE-002"

    def __init__(self, identity: str, remaining_s: float) -> None:
        # Whole seconds, rounded up, as shown to the user
        wait_s = max(1, math.ceil(remaining_s))
        super().__init__(
            detail=f"cooldown active for {identity}",
            context={"identity": identity, "remaining_s": remaining_s},
            public={"seconds": wait_s},
        )
        self.identity = identity
        self.remaining_s = remaining_s


class ReconciliationFailed(KeyLedgerError):
    code = "KL-STO-001"

    def __init__(self, identity: str, cause: BaseException) -> None:
        super().__init__(
            detail=f"reconciliation failed for {identity}: {cause}",
            context={"identity": identity, "cause": type(cause).__name__},
        )
        self.identity = identity
        self.cause = cause


class BatchCommitFailed(KeyLedgerError):
    code = "KL-STO-002"

    def __init__(self, uncommitted: int, committed: int = 0, cause: BaseException | None = None) -> None:
        super().__init__(
            detail=f"{uncommitted} operations uncommitted ({committed} committed)",
            context={"uncommitted": uncommitted, "committed": committed},
        )
        self.uncommitted = uncommitted
        self.committed = committed
        self.cause = cause


class AlreadyListed(KeyLedgerError):
    code = "KL-ACC-002"

    def __init__(self, identity: str, list_name: str) -> None:
        super().__init__(
            detail=f"{identity} already on {list_name}",
            context={"identity": identity},
            public={"list_name": list_name},
        )
        self.identity = identity
        self.list_name = list_name


class NotListed(KeyLedgerError):
    code = "KL-ACC-003"

    def __init__(self, identity: str, list_name: str) -> None:
        super().__init__(
            detail=f"{identity} not on {list_name}",
            context={"identity": identity},
            public={"list_name": list_name},
        )
        self.identity = identity
        self.list_name = list_name
