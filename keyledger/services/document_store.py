"""
Document Store: port for the remote key/value document store.
================================================================

The store is treated as an opaque transactional document store:
    - get by id
    - query by single-field equality (optional order/limit)
    - list / count a collection
    - atomic batched writes (Create / Update / Delete commands)

Writes are expressed as command objects rather than closures over a
transaction handle, so an operation list can be built, inspected, chunked
and logged before anything touches the store.

MemoryDocumentStore is the process-local backend used for local development
and tests. SQLDocumentStore (sql_document_store.py) is the persistent one.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

STORE_HARD_BATCH_LIMIT = 500


# ---------------------------------------------------------------------------
# Write commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Create:
    """Create a document. Fails the whole batch if it already exists."""

    collection: str
    doc_id: str
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Update:
    """Merge *fields* into an existing document. Fails the batch if missing."""

    collection: str
    doc_id: str
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Delete:
    """Delete a document. Deleting a missing document is a no-op."""

    collection: str
    doc_id: str


WriteOp = Union[Create, Update, Delete]


@dataclass(frozen=True)
class Document:
    collection: str
    doc_id: str
    fields: Dict[str, Any]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DocumentStoreError(Exception):
    """Any failure reported by the document store."""


class DocumentExists(DocumentStoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class DocumentMissing(DocumentStoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class BatchTooLarge(DocumentStoreError):
    pass


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class DocumentStore(ABC):
    """Async document store interface."""

    max_batch_size: int = STORE_HARD_BATCH_LIMIT

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document's fields, or None if it does not exist."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        field_name: str,
        value: Any,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return documents whose *field_name* equals *value*."""

    @abstractmethod
    async def list(self, collection: str) -> List[Document]:
        """Return every document in *collection*."""

    @abstractmethod
    async def count(
        self,
        collection: str,
        field_name: Optional[str] = None,
        value: Any = None,
    ) -> int:
        """Count documents, optionally filtered by single-field equality."""

    @abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply *ops* atomically. Raises DocumentStoreError on failure."""

    def _check_batch(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > self.max_batch_size:
            raise BatchTooLarge(
                f"batch of {len(ops)} operations exceeds limit {self.max_batch_size}"
            )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryDocumentStore(DocumentStore):
    """Process-local document store.

    Every call yields to the event loop once so that concurrent tasks can
    interleave at store calls the way they do against a remote store.
    ``calls`` counts invocations per method; ``fail_next`` injects failures.
    """

    def __init__(self, max_batch_size: int = STORE_HARD_BATCH_LIMIT):
        self.max_batch_size = max_batch_size
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._faults: Dict[str, List[BaseException]] = {}
        self.calls: Counter = Counter()
        self.committed_batches: List[int] = []

    # -- fault injection ---------------------------------------------------

    def fail_next(self, method: str, exc: Optional[BaseException] = None, times: int = 1) -> None:
        """Make the next *times* calls to *method* raise *exc*."""
        exc = exc or DocumentStoreError(f"injected {method} failure")
        self._faults.setdefault(method, []).extend([exc] * times)

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        await asyncio.sleep(0)
        pending = self._faults.get(method)
        if pending:
            raise pending.pop(0)

    # -- reads -------------------------------------------------------------

    async def get(self, collection, doc_id):
        await self._enter("get")
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection, field_name, value, order_by=None, limit=None):
        await self._enter("query")
        docs = [
            Document(collection, doc_id, copy.deepcopy(fields))
            for doc_id, fields in self._collections.get(collection, {}).items()
            if field_name in fields and fields[field_name] == value
        ]
        if order_by:
            docs.sort(key=lambda d: (d.fields.get(order_by) is None, str(d.fields.get(order_by))))
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def list(self, collection):
        await self._enter("list")
        return [
            Document(collection, doc_id, copy.deepcopy(fields))
            for doc_id, fields in self._collections.get(collection, {}).items()
        ]

    async def count(self, collection, field_name=None, value=None):
        await self._enter("count")
        docs = self._collections.get(collection, {}).values()
        if field_name is None:
            return len(docs)
        return sum(1 for fields in docs if fields.get(field_name) == value)

    # -- writes ------------------------------------------------------------

    async def commit(self, ops):
        await self._enter("commit")
        self._check_batch(ops)

        # Stage on shallow copies so a failing op leaves nothing applied
        staged = {name: dict(docs) for name, docs in self._collections.items()}
        for op in ops:
            docs = staged.setdefault(op.collection, {})
            if isinstance(op, Create):
                if op.doc_id in docs:
                    raise DocumentExists(op.collection, op.doc_id)
                docs[op.doc_id] = copy.deepcopy(dict(op.fields))
            elif isinstance(op, Update):
                if op.doc_id not in docs:
                    raise DocumentMissing(op.collection, op.doc_id)
                docs[op.doc_id] = {**docs[op.doc_id], **copy.deepcopy(dict(op.fields))}
            elif isinstance(op, Delete):
                docs.pop(op.doc_id, None)
            else:
                raise TypeError(f"unsupported write op: {op!r}")

        self._collections = staged
        self.committed_batches.append(len(ops))

    # -- test helpers ------------------------------------------------------

    def peek(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Synchronous read that bypasses call counting."""
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def seed(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Synchronously insert or replace a document, bypassing call counting."""
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(dict(fields))

    def reset_calls(self) -> None:
        self.calls.clear()
