"""
Key Service: key lifecycle operations exposed to the bot glue layer.
=====================================================================

PURPOSE:
    Issue, redeem, revoke and administer license keys.

    Reads of "which keys does this identity hold" always go through the
    reconciliation engine (and its cache). Administrative writes go through
    the batched mutation executor and then invalidate the identity's cache
    entry with a synchronous refresh.

    After a BatchCommitFailed the identity's cache entry is dropped: a
    partially committed batch leaves an unknown state, so the next read must
    reconcile from the store.

REDEMPTION:
    1. lexical format check (no I/O)
    2. single-flight per identity
    3. denylist / already-bound / pending lookups
    4. one atomic batch: Create keys/<key> + Delete generated_keys/<key>.
       Create fails if the key was bound concurrently, so a pending key is
       consumed exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import ValidationError

from keyledger.core.errors import (
    AlreadyListed,
    BatchCommitFailed,
    IdentityDenylisted,
    InvalidRequest,
    KeyAlreadyBound,
    KeyNotFound,
    NotListed,
    ReconciliationFailed,
)
from keyledger.core.key_codec import KEY_PREFIX, generate_key, parse_key
from keyledger.models.keys import (
    DENYLIST,
    KEYS,
    PENDING_KEYS,
    WHITELIST,
    DenylistEntry,
    KeyRecord,
    PendingKeyRecord,
    WhitelistGrant,
)
from keyledger.services.batch_executor import BatchExecutor, BatchResult
from keyledger.services.document_store import (
    Create,
    Delete,
    Document,
    DocumentExists,
    DocumentStore,
    DocumentStoreError,
    Update,
    WriteOp,
)
from keyledger.services.key_cache import KeyCache
from keyledger.services.rate_limiter import OperationKind, RateLimiter
from keyledger.services.reconciliation import KeyReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")

WHITELIST_NAME = "whitelist"
DENYLIST_NAME = "blacklist"


def _parse_documents(model: Type[T], docs: List[Document]) -> List[Tuple[str, T]]:
    parsed: List[Tuple[str, T]] = []
    for doc in docs:
        try:
            parsed.append((doc.doc_id, model.from_fields(doc.fields)))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s document %s: %s", doc.collection, doc.doc_id, exc.error_count())
    return parsed


@dataclass(frozen=True)
class RedeemResult:
    key: str
    permanent: bool
    expires_at: Optional[datetime] = None


class KeyService:
    """Key lifecycle operations for one document store."""

    def __init__(
        self,
        store: DocumentStore,
        executor: BatchExecutor,
        reconciler: KeyReconciler,
        cache: KeyCache,
        limiter: RateLimiter,
        key_prefix: str = KEY_PREFIX,
        max_issue_count: int = 100,
        max_device_limit: int = 100_000_000,
        script_url: str = "https://vorahub.xyz/loader",
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._executor = executor
        self._reconciler = reconciler
        self._cache = cache
        self._limiter = limiter
        self.key_prefix = key_prefix
        self.max_issue_count = max_issue_count
        self.max_device_limit = max_device_limit
        self.script_url = script_url
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def _read(self, identity: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except DocumentStoreError as exc:
            raise ReconciliationFailed(identity, exc) from exc

    async def _write(self, identity: Optional[str], ops: Sequence[WriteOp]) -> BatchResult:
        try:
            return await self._executor.execute(ops)
        except BatchCommitFailed:
            if identity is not None:
                self._cache.delete(identity)
            raise

    # ------------------------------------------------------------------
    # Active keys
    # ------------------------------------------------------------------

    async def get_user_active_keys(
        self,
        identity: str,
        alias_label: Optional[str],
        force_fresh: bool = False,
    ) -> List[str]:
        return await self._reconciler.resolve_active_keys(identity, alias_label, force_fresh=force_fresh)

    async def invalidate_user_cache(self, identity: str, alias_label: Optional[str]) -> List[str]:
        """Drop the cached entry and rebuild it synchronously."""
        self._cache.delete(identity)
        return await self._reconciler.refresh(identity, alias_label, is_background=False)

    # ------------------------------------------------------------------
    # Issuance / redemption
    # ------------------------------------------------------------------

    async def issue_keys(
        self,
        count: int,
        validity_days: Optional[int] = None,
        issued_by: str = "system",
    ) -> List[str]:
        """Write *count* pending keys. validity_days None or <= 0 means permanent."""
        if not 1 <= count <= self.max_issue_count:
            raise InvalidRequest(detail=f"count must be between 1 and {self.max_issue_count}, got {count}")
        if validity_days is not None and validity_days <= 0:
            validity_days = None

        issued_at = self._now()
        keys = [generate_key(self.key_prefix) for _ in range(count)]
        ops = [
            Create(PENDING_KEYS, key, PendingKeyRecord(
                issued_by=issued_by,
                issued_at=issued_at,
                validity_days=validity_days,
            ).to_fields())
            for key in keys
        ]
        await self._write(None, ops)
        logger.info(
            "Issued %d pending keys (validity=%s) by %s",
            count, f"{validity_days}d" if validity_days else "permanent", issued_by,
        )
        return keys

    async def redeem_key(self, identity: str, alias_label: Optional[str], token: str) -> RedeemResult:
        key = parse_key(token, self.key_prefix)

        with self._limiter.guard(identity, OperationKind.REDEEM):
            denied, bound, pending = await self._read(identity, asyncio.gather(
                self._store.get(DENYLIST, identity),
                self._store.get(KEYS, key),
                self._store.get(PENDING_KEYS, key),
            ))
            if denied is not None:
                raise IdentityDenylisted(identity)
            if bound is not None:
                raise KeyAlreadyBound(key, bound.get("owner_alias_label"))
            if pending is None:
                raise KeyNotFound(key)

            try:
                pending_record = PendingKeyRecord.from_fields(pending)
            except ValidationError as exc:
                logger.warning("Pending key %s is malformed (%d errors), refusing redemption", key, exc.error_count())
                raise KeyNotFound(key) from exc
            now = self._now()
            expires_at = None
            if not pending_record.is_permanent:
                expires_at = now + timedelta(days=pending_record.validity_days)

            record = KeyRecord(
                owner_identity=identity,
                owner_alias_label=alias_label,
                bound_at=now,
                created_at=now,
                expires_at=expires_at,
            )
            try:
                await self._write(identity, [
                    Create(KEYS, key, record.to_fields()),
                    Delete(PENDING_KEYS, key),
                ])
            except BatchCommitFailed as exc:
                if isinstance(exc.cause, DocumentExists):
                    # Lost a race with another redemption of the same key
                    holder = await self._read(identity, self._store.get(KEYS, key))
                    raise KeyAlreadyBound(key, (holder or {}).get("owner_alias_label")) from exc
                raise

        self._cache.delete(identity)
        logger.info("Key redeemed by %s (permanent=%s)", identity, pending_record.is_permanent)
        return RedeemResult(key=key, permanent=pending_record.is_permanent, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    async def revoke_all_keys(self, identity: str, alias_label: Optional[str]) -> int:
        """Delete every active key of the identity and its whitelist grant."""
        with self._limiter.guard(identity, OperationKind.REVOKE):
            keys = await self._reconciler.resolve_active_keys(identity, alias_label, force_fresh=True)
            grant = await self._read(identity, self._store.get(WHITELIST, identity))

            ops: List[WriteOp] = [Delete(KEYS, key) for key in keys]
            if grant is not None:
                ops.append(Delete(WHITELIST, identity))
            await self._write(identity, ops)
            await self.invalidate_user_cache(identity, alias_label)

        logger.info("Revoked %d keys of %s", len(keys), identity)
        return len(keys)

    async def set_device_limit(self, identity: str, alias_label: Optional[str], new_limit: int) -> int:
        if not 1 <= new_limit <= self.max_device_limit:
            raise InvalidRequest(detail=f"device limit must be between 1 and {self.max_device_limit}")

        with self._limiter.guard(identity, OperationKind.SET_DEVICE_LIMIT):
            keys = await self._reconciler.resolve_active_keys(identity, alias_label, force_fresh=True)
            if not keys:
                return 0
            await self._write(identity, [Update(KEYS, key, {"device_limit": new_limit}) for key in keys])
            await self.invalidate_user_cache(identity, alias_label)

        logger.info("Device limit of %d keys of %s set to %d", len(keys), identity, new_limit)
        return len(keys)

    async def reset_device_binding(self, key: str) -> None:
        """Clear the device fingerprint bound to *key*."""
        key = parse_key(key, self.key_prefix)
        fields = await self._read(key, self._store.get(KEYS, key))
        if fields is None:
            raise KeyNotFound(key)
        await self._write(None, [Update(KEYS, key, {"device_fingerprint": ""})])
        logger.info("Device binding reset for a key of %s", fields.get("owner_identity") or "unbound owner")

    async def reset_all_device_bindings(self, identity: str, alias_label: Optional[str]) -> int:
        with self._limiter.guard(identity, OperationKind.RESET_DEVICE):
            keys = await self._reconciler.resolve_active_keys(identity, alias_label)
            if keys:
                await self._write(identity, [Update(KEYS, key, {"device_fingerprint": ""}) for key in keys])
        logger.info("Device bindings reset for %d keys of %s", len(keys), identity)
        return len(keys)

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    async def add_to_whitelist(self, identity: str, alias_label: Optional[str], granted_by: str) -> str:
        """Grant a permanent whitelist key. Returns the new key."""
        with self._limiter.guard(identity, OperationKind.WHITELIST):
            if await self._read(identity, self._store.get(WHITELIST, identity)) is not None:
                raise AlreadyListed(identity, WHITELIST_NAME)

            now = self._now()
            key = generate_key(self.key_prefix)
            await self._write(identity, [
                Create(KEYS, key, KeyRecord(
                    owner_identity=identity,
                    owner_alias_label=alias_label,
                    bound_at=now,
                    created_at=now,
                    expires_at=None,
                    is_whitelist_grant=True,
                ).to_fields()),
                Create(WHITELIST, identity, WhitelistGrant(
                    owner_identity=identity,
                    owner_alias_label=alias_label,
                    linked_key=key,
                    granted_by=granted_by,
                    granted_at=now,
                ).to_fields()),
            ])
            await self.invalidate_user_cache(identity, alias_label)

        logger.info("Whitelisted %s by %s", identity, granted_by)
        return key

    async def remove_from_whitelist(self, identity: str, alias_label: Optional[str]) -> None:
        with self._limiter.guard(identity, OperationKind.WHITELIST):
            fields = await self._read(identity, self._store.get(WHITELIST, identity))
            if fields is None:
                raise NotListed(identity, WHITELIST_NAME)

            ops: List[WriteOp] = [Delete(WHITELIST, identity)]
            linked = fields.get("linked_key")
            if linked:
                ops.append(Delete(KEYS, linked))
            await self._write(identity, ops)
            await self.invalidate_user_cache(identity, alias_label)

        logger.info("Removed %s from whitelist", identity)

    async def list_whitelist(self) -> List[WhitelistGrant]:
        docs = await self._read("*", self._store.list(WHITELIST))
        return [grant for _, grant in _parse_documents(WhitelistGrant, docs)]

    # ------------------------------------------------------------------
    # Denylist
    # ------------------------------------------------------------------

    async def add_to_denylist(self, identity: str, alias_label: Optional[str], added_by: str) -> int:
        """Denylist the identity and delete its whitelist grant and every key.

        Returns the number of keys deleted.
        """
        with self._limiter.guard(identity, OperationKind.DENYLIST):
            if await self._read(identity, self._store.get(DENYLIST, identity)) is not None:
                raise AlreadyListed(identity, DENYLIST_NAME)

            keys = await self._reconciler.resolve_active_keys(identity, alias_label, force_fresh=True)
            grant = await self._read(identity, self._store.get(WHITELIST, identity))

            doomed = dict.fromkeys(keys)
            ops: List[WriteOp] = [
                Create(DENYLIST, identity, DenylistEntry(
                    owner_identity=identity,
                    owner_alias_label=alias_label,
                    added_by=added_by,
                    added_at=self._now(),
                ).to_fields()),
            ]
            if grant is not None:
                ops.append(Delete(WHITELIST, identity))
                if grant.get("linked_key"):
                    doomed[grant["linked_key"]] = None
            ops.extend(Delete(KEYS, key) for key in doomed)

            await self._write(identity, ops)
            await self.invalidate_user_cache(identity, alias_label)

        logger.info("Denylisted %s by %s (%d keys deleted)", identity, added_by, len(doomed))
        return len(doomed)

    async def remove_from_denylist(self, identity: str) -> None:
        with self._limiter.guard(identity, OperationKind.DENYLIST):
            if await self._read(identity, self._store.get(DENYLIST, identity)) is None:
                raise NotListed(identity, DENYLIST_NAME)
            await self._write(None, [Delete(DENYLIST, identity)])
        logger.info("Removed %s from denylist", identity)

    async def list_denylist(self) -> List[DenylistEntry]:
        docs = await self._read("*", self._store.list(DENYLIST))
        return [entry for _, entry in _parse_documents(DenylistEntry, docs)]

    async def is_denylisted(self, identity: str) -> bool:
        return await self._read(identity, self._store.get(DENYLIST, identity)) is not None

    # ------------------------------------------------------------------
    # Pending keys / loader
    # ------------------------------------------------------------------

    async def list_pending_keys(self) -> List[Tuple[str, PendingKeyRecord]]:
        docs = await self._read("*", self._store.list(PENDING_KEYS))
        pending = _parse_documents(PendingKeyRecord, docs)
        pending.sort(key=lambda item: item[1].issued_at)
        return pending

    async def count_pending_keys(self) -> int:
        return await self._read("*", self._store.count(PENDING_KEYS))

    def build_loader_script(self, key: str) -> str:
        return f'_G.script_key = "{key}"\nloadstring(game:HttpGet("{self.script_url}"))()'
