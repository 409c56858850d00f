"""Document store interface consumed by the sales and reporting components.

The core never talks to a concrete database. It is handed a
:class:`DocumentStore` offering keyed reads, predicate queries and
multi-document transactions with optimistic concurrency:

* a transaction function receives a :class:`Transaction`, performs every
  read first and then buffers its writes;
* on commit the store checks that nothing the function read has changed in the
  meantime, otherwise the function is executed again from scratch;
* after ``max_attempts`` conflicting attempts the store raises
  :class:`~gym_ledger.exceptions.TransactionAborted`.

:class:`InMemoryDocumentStore` implements those semantics for tests and local
tooling; adapters for hosted document databases implement the same ABCs.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from . import log
from .constants import DEFAULT_MAX_TRANSACTION_ATTEMPTS
from .exceptions import StoreError, TransactionAborted, TransactionConflict, TransactionOrderError


T = TypeVar("T")
Document = Dict[str, Any]
Predicate = Callable[[Mapping[str, Any]], bool]
CollectionName = Union[str, Any]


@dataclass(frozen=True)
class Increment:
    """Field value asking the store to add ``amount`` atomically at commit."""

    amount: Union[int, float]


def _collection_key(collection: CollectionName) -> str:
    """Accept both plain strings and ``Collection`` enum members."""
    return getattr(collection, "value", collection)


class Transaction(ABC):
    """Unit of work handed to a transaction function."""

    @abstractmethod
    async def get(self, collection: CollectionName, doc_id: str) -> Optional[Document]:
        """Read a document; must happen before any write in the transaction."""

    @abstractmethod
    def set(self, collection: CollectionName, doc_id: str, data: Mapping[str, Any]) -> None:
        """Buffer a full create-or-replace of a document."""

    @abstractmethod
    def update(self, collection: CollectionName, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Buffer a partial update; values may be :class:`Increment` sentinels.

        Dotted keys (``"product_sales.total"``) address nested maps.
        """


class DocumentStore(ABC):
    """Transactional key/document database addressed by collection and id.

    ``max_attempts`` bounds how many times :meth:`run_transaction` runs the
    transaction function before giving up with :class:`TransactionAborted`.
    """

    max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS

    @abstractmethod
    async def get(self, collection: CollectionName, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or ``None`` when it does not exist."""

    @abstractmethod
    async def query(self, collection: CollectionName, predicate: Optional[Predicate] = None) -> List[Document]:
        """Return copies of every document in ``collection`` matching ``predicate``."""

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` atomically, retrying it on write conflicts."""

    def new_id(self, collection: CollectionName) -> str:
        """Allocate an identifier for a document about to be created."""
        return uuid.uuid4().hex


@dataclass
class _StoredDocument:
    version: int
    data: Document = field(default_factory=dict)


def _with_id(doc_id: str, data: Mapping[str, Any]) -> Document:
    document = copy.deepcopy(dict(data))
    document["id"] = doc_id
    return document


def _strip_id(data: Mapping[str, Any]) -> Document:
    document = copy.deepcopy(dict(data))
    document.pop("id", None)
    return document


def apply_field_updates(document: Document, fields: Mapping[str, Any]) -> Document:
    """Apply dotted-path field updates and increments to ``document`` in place."""

    for path, value in fields.items():
        parts = path.split(".")
        target = document
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        leaf = parts[-1]
        if isinstance(value, Increment):
            current = target.get(leaf)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                current = 0
            target[leaf] = current + value.amount
        else:
            target[leaf] = copy.deepcopy(value)
    return document


class _InMemoryTransaction(Transaction):
    """Transaction that records read versions and buffers writes until commit."""

    def __init__(self, store: "InMemoryDocumentStore") -> None:
        self._store = store
        self.read_versions: Dict[Tuple[str, str], int] = {}
        self._snapshots: Dict[Tuple[str, str], Optional[Document]] = {}
        self.writes: List[Tuple[str, Tuple[str, str], Document]] = []

    async def get(self, collection: CollectionName, doc_id: str) -> Optional[Document]:
        if self.writes:
            raise TransactionOrderError(
                f"Read of {_collection_key(collection)}/{doc_id} attempted after a write"
            )
        key = (_collection_key(collection), doc_id)
        if key in self._snapshots:
            snapshot = self._snapshots[key]
            return copy.deepcopy(snapshot) if snapshot is not None else None

        stored = self._store._lookup(*key)
        if stored is None:
            self.read_versions[key] = 0
            self._snapshots[key] = None
        else:
            self.read_versions[key] = stored.version
            self._snapshots[key] = _with_id(doc_id, stored.data)

        # Yield after the read so concurrent transactions can commit in between.
        await asyncio.sleep(0)
        snapshot = self._snapshots[key]
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def set(self, collection: CollectionName, doc_id: str, data: Mapping[str, Any]) -> None:
        self.writes.append(("set", (_collection_key(collection), doc_id), _strip_id(data)))

    def update(self, collection: CollectionName, doc_id: str, fields: Mapping[str, Any]) -> None:
        self.writes.append(("update", (_collection_key(collection), doc_id), dict(fields)))


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store with optimistic concurrency control.

    Every document carries a version counter. A transaction records the
    version of each document it reads (0 for absent documents) and the commit,
    executed under a single lock, fails with a conflict when any of those
    versions moved. Conflicting transaction functions are re-run up to
    ``max_attempts`` times.
    """

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._collections: Dict[str, Dict[str, _StoredDocument]] = {}
        self._commit_lock = asyncio.Lock()

    def _lookup(self, collection: str, doc_id: str) -> Optional[_StoredDocument]:
        return self._collections.get(collection, {}).get(doc_id)

    async def get(self, collection: CollectionName, doc_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        stored = self._lookup(_collection_key(collection), doc_id)
        if stored is None:
            return None
        return _with_id(doc_id, stored.data)

    async def query(self, collection: CollectionName, predicate: Optional[Predicate] = None) -> List[Document]:
        await asyncio.sleep(0)
        documents = [
            _with_id(doc_id, stored.data)
            for doc_id, stored in self._collections.get(_collection_key(collection), {}).items()
        ]
        if predicate is None:
            return documents
        return [document for document in documents if predicate(document)]

    async def put(self, collection: CollectionName, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create or replace a single document outside any caller transaction."""

        async def _write(tx: Transaction) -> None:
            tx.set(collection, doc_id, data)

        await self.run_transaction(_write)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        last_conflict: Optional[TransactionConflict] = None
        for attempt in range(1, self.max_attempts + 1):
            tx = _InMemoryTransaction(self)
            result = await fn(tx)
            try:
                await self._commit(tx)
            except TransactionConflict as exc:
                last_conflict = exc
                log.debug("Transaction attempt %d/%d conflicted: %s", attempt, self.max_attempts, exc)
                await asyncio.sleep(0)
                continue
            return result

        log.warning("Transaction aborted after %d conflicting attempts", self.max_attempts)
        raise TransactionAborted(self.max_attempts, last_conflict)

    async def _commit(self, tx: _InMemoryTransaction) -> None:
        """Validate read versions and apply buffered writes atomically."""

        async with self._commit_lock:
            for (collection, doc_id), version in tx.read_versions.items():
                stored = self._lookup(collection, doc_id)
                current = stored.version if stored is not None else 0
                if current != version:
                    raise TransactionConflict(
                        f"{collection}/{doc_id} changed (read v{version}, now v{current})"
                    )

            staged: Dict[Tuple[str, str], Document] = {}
            for operation, key, payload in tx.writes:
                if operation == "set":
                    staged[key] = copy.deepcopy(payload)
                    continue
                if key in staged:
                    base = staged[key]
                else:
                    stored = self._lookup(*key)
                    if stored is None:
                        raise StoreError(f"Cannot update missing document {key[0]}/{key[1]}")
                    base = copy.deepcopy(stored.data)
                staged[key] = apply_field_updates(base, payload)

            for (collection, doc_id), data in staged.items():
                documents = self._collections.setdefault(collection, {})
                previous = documents.get(doc_id)
                version = previous.version + 1 if previous is not None else 1
                documents[doc_id] = _StoredDocument(version=version, data=data)


__all__ = [
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "Increment",
    "Predicate",
    "Transaction",
    "apply_field_updates",
]
