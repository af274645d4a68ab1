"""
Service wiring.

build_services() constructs one set of collaborators (store, executor, cache,
limiter, reconciler, sweeper, key service) from Settings. main.py stores the
container on ``app.state.services``; routers reach it through the FastAPI
dependency getters below.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from keyledger.config import Settings
from keyledger.services.batch_executor import BatchExecutor
from keyledger.services.document_store import DocumentStore, MemoryDocumentStore
from keyledger.services.idle_sweeper import IdleSweeper
from keyledger.services.key_cache import KeyCache
from keyledger.services.key_service import KeyService
from keyledger.services.rate_limiter import RateLimiter
from keyledger.services.reconciliation import KeyReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    executor: BatchExecutor
    cache: KeyCache
    limiter: RateLimiter
    reconciler: KeyReconciler
    sweeper: IdleSweeper
    keys: KeyService

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.reconciler.shutdown()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory document store: data is lost on restart")
        return MemoryDocumentStore(max_batch_size=settings.store_batch_limit)

    from keyledger.services.sql_document_store import SQLDocumentStore
    return SQLDocumentStore(settings.database_url, max_batch_size=settings.store_batch_limit, echo=settings.debug)


def build_services(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    store = store if store is not None else build_store(settings)
    executor = BatchExecutor(store, chunk_size=settings.batch_chunk_size)
    cache = KeyCache(clock=clock)
    limiter = RateLimiter(inflight_ceiling_s=settings.inflight_ceiling_s, clock=clock)
    reconciler = KeyReconciler(
        store,
        executor,
        cache,
        limiter,
        cache_ttl_s=settings.cache_ttl_s,
        soft_refresh_s=settings.soft_refresh_s,
        clock=clock,
    )
    sweeper = IdleSweeper(
        cache,
        limiter,
        interval_s=settings.sweep_interval_s,
        cache_ttl_s=settings.cache_ttl_s,
        cache_grace_multiplier=settings.cache_grace_multiplier,
        clock=clock,
    )
    keys = KeyService(
        store,
        executor,
        reconciler,
        cache,
        limiter,
        key_prefix=settings.key_prefix,
        max_issue_count=settings.max_issue_count,
        max_device_limit=settings.max_device_limit,
        script_url=settings.script_url,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        executor=executor,
        cache=cache,
        limiter=limiter,
        reconciler=reconciler,
        sweeper=sweeper,
        keys=keys,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_key_service(request: Request) -> KeyService:
    return request.app.state.services.keys
