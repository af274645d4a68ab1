"""
Reconciliation Engine: authoritative active-key set per identity
==================================================================

PURPOSE:
    Decides which keys an identity currently holds by merging three lookup
    paths, then caches the answer:

      1. keys where owner_identity == identity
      2. keys where owner_alias_label == alias label (only on a genuine miss;
         background refreshes skip it)
      3. the identity's whitelist grant and the key it links to

    While merging it queues self-heal writes for records whose cross
    references are incomplete, purges expired records, and materializes a
    missing whitelist key. Self-heal failures are logged and never fail the
    read that discovered them.

CACHE POLICY:
    - fresh entry (age < soft_refresh_s): served with no I/O
    - soft-stale entry: served immediately, background refresh spawned
    - hard-expired / missing / force_fresh: synchronous refresh

    Background refreshes are tracked tasks guarded by the
    (identity, BACKGROUND_REFRESH) in-flight marker. A refresh already in
    flight is skipped. Their failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from keyledger.core.errors import BatchCommitFailed, ReconciliationFailed
from keyledger.models.keys import KEYS, WHITELIST, KeyRecord, WhitelistGrant
from keyledger.services.batch_executor import BatchExecutor
from keyledger.services.document_store import (
    Create,
    Delete,
    Document,
    DocumentStore,
    DocumentStoreError,
    Update,
    WriteOp,
)
from keyledger.services.key_cache import CacheEntry, KeyCache
from keyledger.services.rate_limiter import OperationKind, RateLimiter

logger = logging.getLogger(__name__)


def _parse_records(docs: List[Document]) -> Dict[str, KeyRecord]:
    records: Dict[str, KeyRecord] = {}
    for doc in docs:
        try:
            records[doc.doc_id] = KeyRecord.from_fields(doc.fields)
        except ValidationError as exc:
            logger.warning("Skipping malformed key record %s: %s", doc.doc_id, exc.error_count())
    return records


class KeyReconciler:
    """Resolves, heals and caches the active key set of an identity."""

    def __init__(
        self,
        store: DocumentStore,
        executor: BatchExecutor,
        cache: KeyCache,
        limiter: RateLimiter,
        cache_ttl_s: float = 600,
        soft_refresh_s: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        if soft_refresh_s >= cache_ttl_s:
            raise ValueError("soft_refresh_s must be shorter than cache_ttl_s")
        self._store = store
        self._executor = executor
        self._cache = cache
        self._limiter = limiter
        self.cache_ttl_s = cache_ttl_s
        self.soft_refresh_s = soft_refresh_s
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def resolve_active_keys(
        self,
        identity: str,
        alias_label: Optional[str],
        force_fresh: bool = False,
    ) -> List[str]:
        if not force_fresh:
            now = self._clock()
            entry = self._cache.get(identity)
            if entry is not None and entry.is_usable(now):
                if entry.age(now) >= self.soft_refresh_s:
                    logger.debug("Cache soft-stale for %s, serving and refreshing", identity)
                    self.schedule_background_refresh(identity, alias_label)
                else:
                    logger.debug("Cache hit for %s (%d keys)", identity, len(entry.key_set))
                return list(entry.key_set)

        logger.debug("Cache miss for %s (force_fresh=%s)", identity, force_fresh)
        return await self.refresh(identity, alias_label, is_background=False)

    def schedule_background_refresh(self, identity: str, alias_label: Optional[str]) -> bool:
        """Spawn a non-blocking refresh. Returns False if one is already in flight."""
        if not self._limiter.start_operation(identity, OperationKind.BACKGROUND_REFRESH):
            logger.debug("Background refresh already in flight for %s, skipped", identity)
            return False

        task = asyncio.create_task(
            self._background_refresh(identity, alias_label),
            name=f"key-refresh:{identity}",
        )
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_background_done(identity, t))
        return True

    async def _background_refresh(self, identity: str, alias_label: Optional[str]) -> None:
        try:
            await self.refresh(identity, alias_label, is_background=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "background_refresh_failed",
                extra={"identity": identity, "error.kind": type(exc).__name__, "error.message": str(exc)},
            )

    def _on_background_done(self, identity: str, task: asyncio.Task) -> None:
        # Runs even when the task was cancelled before it started
        self._background.discard(task)
        self._limiter.end_operation(identity, OperationKind.BACKGROUND_REFRESH)

    @property
    def background_count(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for every outstanding background refresh to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.drain()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(
        self,
        identity: str,
        alias_label: Optional[str],
        is_background: bool = False,
    ) -> List[str]:
        started = self._clock()
        generation = self._cache.generation(identity)
        now = datetime.fromtimestamp(started, timezone.utc)
        use_alias = bool(alias_label) and not is_background

        try:
            lookups = [
                self._store.query(KEYS, "owner_identity", identity),
                self._store.get(WHITELIST, identity),
            ]
            if use_alias:
                lookups.append(self._store.query(KEYS, "owner_alias_label", alias_label))
            results = await asyncio.gather(*lookups)
        except DocumentStoreError as exc:
            raise ReconciliationFailed(identity, exc) from exc

        by_identity = _parse_records(results[0])
        grant = self._parse_grant(identity, results[1])
        by_alias = _parse_records(results[2]) if use_alias else {}
        linked_key = grant.linked_key if grant else None

        active: Dict[str, None] = {}  # insertion-ordered set
        heals: Dict[str, dict] = {}
        purges: List[str] = []
        creates: List[WriteOp] = []

        # Primary identity lookup
        for key, record in by_identity.items():
            if key != linked_key and record.is_expired(now):
                purges.append(key)
                continue
            active[key] = None
            if alias_label and not record.owner_alias_label:
                heals.setdefault(key, {})["owner_alias_label"] = alias_label

        # Alias fallback: records that predate identity binding
        for key, record in by_alias.items():
            if key in active or key in by_identity:
                continue
            if record.owner_identity not in (None, identity):
                continue
            if key != linked_key and record.is_expired(now):
                purges.append(key)
                continue
            active[key] = None
            heals.setdefault(key, {})["owner_identity"] = identity

        # Whitelist linkage
        if grant is not None:
            active[linked_key] = None
            record = by_identity.get(linked_key) or by_alias.get(linked_key)
            exists = record is not None
            if not exists:
                exists, record = await self._fetch_key(identity, linked_key)

            label = grant.owner_alias_label or alias_label
            if not exists:
                creates.append(Create(KEYS, linked_key, KeyRecord(
                    owner_identity=identity,
                    owner_alias_label=label,
                    bound_at=now,
                    created_at=now,
                    expires_at=None,
                    is_whitelist_grant=True,
                ).to_fields()))
            elif record is not None:
                fix = heals.setdefault(linked_key, {})
                if not record.owner_identity:
                    fix["owner_identity"] = identity
                if not record.owner_alias_label and label:
                    fix["owner_alias_label"] = label
                if not record.is_whitelist_grant:
                    fix["is_whitelist_grant"] = True

        ops: List[WriteOp] = [
            *creates,
            *(Update(KEYS, key, fields) for key, fields in heals.items() if fields),
            *(Delete(KEYS, key) for key in purges),
        ]
        if ops:
            await self._submit(identity, ops, purged=len(purges))

        done = self._clock()
        current = self._cache.get(identity)
        if self._cache.generation(identity) != generation:
            # A write invalidated the identity while this refresh was reading
            logger.debug("Discarding refresh result for %s invalidated mid-flight", identity)
        elif current is not None and current.last_refreshed_at > started:
            # A newer refresh finished while this one was waiting on the store
            logger.debug("Discarding superseded refresh result for %s", identity)
        else:
            self._cache.set(identity, CacheEntry(
                key_set=tuple(active),
                hard_expiry=done + self.cache_ttl_s,
                last_refreshed_at=done,
            ))

        logger.info(
            "Resolved %d active keys for %s (%d purged, %d healed, background=%s)",
            len(active), identity, len(purges), len(ops) - len(purges), is_background,
        )
        return list(active)

    def _parse_grant(self, identity: str, fields: Optional[dict]) -> Optional[WhitelistGrant]:
        if fields is None:
            return None
        try:
            grant = WhitelistGrant.from_fields(fields)
        except ValidationError as exc:
            logger.warning("Ignoring malformed whitelist grant for %s: %s", identity, exc.error_count())
            return None
        return grant if grant.linked_key else None

    async def _fetch_key(self, identity: str, key: str) -> Tuple[bool, Optional[KeyRecord]]:
        """Return (exists, record). A malformed record exists but is not healed."""
        try:
            fields = await self._store.get(KEYS, key)
        except DocumentStoreError as exc:
            raise ReconciliationFailed(identity, exc) from exc
        if fields is None:
            return False, None
        try:
            return True, KeyRecord.from_fields(fields)
        except ValidationError:
            logger.warning("Whitelisted key %s is malformed, leaving it untouched", key)
            return True, None

    async def _submit(self, identity: str, ops: List[WriteOp], purged: int) -> None:
        try:
            result = await self._executor.execute(ops)
        except BatchCommitFailed as exc:
            logger.warning(
                "self_heal_failed",
                extra={"identity": identity, "uncommitted": exc.uncommitted, "committed": exc.committed},
            )
            return
        logger.info(
            "Self-heal committed for %s: %d operations in %d chunks (%d purges)",
            identity, result.operations, result.chunks, purged,
        )
