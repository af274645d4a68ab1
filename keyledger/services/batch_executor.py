"""
Batched Mutation Executor
=========================

Commits an ordered list of write commands in chunks no larger than the
store's per-transaction ceiling (450 by default, buffered below the hard
limit of 500).

Chunks commit one after another in list order. Atomicity is per chunk
only. Every chunk is attempted, even after an earlier one failed; when any
chunk fails the call raises BatchCommitFailed carrying the number of
operations left uncommitted, while chunks that succeeded stay committed. There is no
application-level retry: the store's own bounded retry is the only one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from keyledger.core.errors import BatchCommitFailed
from keyledger.services.document_store import DocumentStore, WriteOp

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 450


@dataclass(frozen=True)
class BatchResult:
    chunks: int
    operations: int
    chunk_sizes: List[int] = field(default_factory=list)


def chunk_ops(ops: Sequence[WriteOp], chunk_size: int) -> List[List[WriteOp]]:
    """Split *ops* into consecutive chunks of at most *chunk_size*."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [list(ops[i:i + chunk_size]) for i in range(0, len(ops), chunk_size)]


class BatchExecutor:
    """Chunked, in-order commit of write commands."""

    def __init__(self, store: DocumentStore, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size > store.max_batch_size:
            raise ValueError(
                f"chunk_size {chunk_size} exceeds store batch limit {store.max_batch_size}"
            )
        self._store = store
        self.chunk_size = chunk_size

    async def execute(self, ops: Sequence[WriteOp]) -> BatchResult:
        if not ops:
            return BatchResult(chunks=0, operations=0)

        chunks = chunk_ops(ops, self.chunk_size)
        sizes = [len(c) for c in chunks]
        logger.info("Committing %d operations in %d chunks", len(ops), len(chunks))

        uncommitted = 0
        first_error: Exception | None = None
        # In order: a later chunk may update a document an earlier one creates
        for index, chunk in enumerate(chunks):
            try:
                await self._store.commit(chunk)
            except Exception as exc:
                uncommitted += len(chunk)
                first_error = first_error or exc
                logger.error(
                    "Batch chunk %d/%d of %d operations failed: %s",
                    index + 1, len(chunks), len(chunk), exc,
                )

        if first_error is not None:
            committed = len(ops) - uncommitted
            raise BatchCommitFailed(uncommitted=uncommitted, committed=committed, cause=first_error)

        return BatchResult(chunks=len(chunks), operations=len(ops), chunk_sizes=sizes)
