"""Document store abstraction and the in-memory implementation."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from bizdir.core.errors import StoreError

logger = logging.getLogger(__name__)

RANGE_OPS = {">=", "<=", ">", "<"}
SUPPORTED_OPS = RANGE_OPS | {"=="}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in SUPPORTED_OPS:
            raise ValueError(f"unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.data}


@dataclass(frozen=True)
class WriteOp:
    kind: str
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = True


class WriteBatch:
    """Collects writes and applies them atomically on commit."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[WriteOp] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = True) -> "WriteBatch":
        self._ops.append(WriteOp("set", collection, doc_id, dict(data), merge))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(WriteOp("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        if not self._ops:
            return
        self._store._apply(tuple(self._ops))


def range_field(filters: Sequence[Filter]) -> Optional[str]:
    """Return the single field carrying range filters, if any."""
    fields = {flt.field for flt in filters if flt.op in RANGE_OPS}
    if len(fields) > 1:
        raise ValueError("range filters are only supported on a single field")
    return next(iter(fields), None)


class DocumentStore(ABC):
    """Key-value document store with range queries and batched writes."""

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or None when it does not exist."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Document]:
        """Return matching documents ordered by the range field or by id."""

    @abstractmethod
    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        ...

    @abstractmethod
    def stream(self, collection: str) -> Iterator[Document]:
        """Yield every document of a collection in id order."""

    @abstractmethod
    def add(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def increment(self, collection: str, doc_id: str, field_name: str, by: int = 1) -> int:
        """Atomically add ``by`` to a numeric field and return the new value."""

    @abstractmethod
    def ping(self) -> None:
        ...

    @abstractmethod
    def _apply(self, ops: Tuple[WriteOp, ...]) -> None:
        ...


def _comparable(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return True
    return type(left) is type(right)


def _matches(data: Dict[str, Any], flt: Filter) -> bool:
    if flt.field not in data:
        return False
    value = data[flt.field]
    if not _comparable(value, flt.value):
        return False
    if flt.op == "==":
        return value == flt.value
    if flt.op == ">=":
        return value >= flt.value
    if flt.op == "<=":
        return value <= flt.value
    if flt.op == ">":
        return value > flt.value
    return value < flt.value


class MemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store used for tests and local runs."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return None
            return Document(doc_id, copy.deepcopy(data))

    def _select(self, collection: str, filters: Sequence[Filter]) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (doc_id, data)
            for doc_id, data in self._collection(collection).items()
            if all(_matches(data, flt) for flt in filters)
        ]

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Document]:
        order_field = order_by or range_field(filters)
        with self._lock:
            rows = self._select(collection, filters)
            if order_field:
                rows = [row for row in rows if order_field in row[1]]
                rows.sort(key=lambda row: (row[1][order_field], row[0]))
            else:
                rows.sort(key=lambda row: row[0])
            end = None if limit is None else offset + limit
            return [Document(doc_id, copy.deepcopy(data)) for doc_id, data in rows[offset:end]]

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        with self._lock:
            return len(self._select(collection, filters))

    def stream(self, collection: str) -> Iterator[Document]:
        with self._lock:
            snapshot = sorted(self._collection(collection).items())
            documents = [Document(doc_id, copy.deepcopy(data)) for doc_id, data in snapshot]
        yield from documents

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    def increment(self, collection: str, doc_id: str, field_name: str, by: int = 1) -> int:
        with self._lock:
            data = self._collection(collection).setdefault(doc_id, {})
            data[field_name] = int(data.get(field_name) or 0) + by
            return data[field_name]

    def ping(self) -> None:
        return None

    def _apply(self, ops: Tuple[WriteOp, ...]) -> None:
        with self._lock:
            for op in ops:
                documents = self._collection(op.collection)
                if op.kind == "delete":
                    documents.pop(op.doc_id, None)
                elif op.merge and op.doc_id in documents:
                    documents[op.doc_id].update(copy.deepcopy(op.data))
                else:
                    documents[op.doc_id] = copy.deepcopy(op.data)
        logger.debug("Applied %d write operations", len(ops))


def open_store(settings) -> DocumentStore:
    """Build the store selected by configuration."""
    if settings.store_backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    if settings.store_backend != "postgres":
        raise StoreError(f"unknown STORE_BACKEND: {settings.store_backend}")

    from bizdir.core.db import PostgresDocumentStore

    store = PostgresDocumentStore(settings.database_url, maxconn=settings.db_pool_max)
    store.ensure_schema()
    return store
