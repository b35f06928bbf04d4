from __future__ import annotations

import copy
import json
import logging
import operator
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, Protocol

from sqlalchemy import Boolean, ColumnElement, DateTime, Float, Index, String, Text, create_engine, delete, false, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

FilterOp = Literal["==", "<", "<=", ">", ">="]

# Longer strings are stored in the payload only and never indexed.
INDEXED_TEXT_LENGTH = 256


class DocumentStoreError(RuntimeError):
    """Raised when the backing store fails to read or commit documents."""


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Any = _ServerTimestamp()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        # Missing fields and None never satisfy a comparison.
        if self.field not in data:
            return False
        current = data[self.field]
        if current is None or self.value is None:
            return False
        if isinstance(current, datetime):
            current = _coerce_utc(current)
        expected = self.value
        if isinstance(expected, datetime):
            expected = _coerce_utc(expected)
        try:
            if self.op == "==":
                return current == expected
            if self.op == "<":
                return current < expected
            if self.op == "<=":
                return current <= expected
            if self.op == ">":
                return current > expected
            if self.op == ">=":
                return current >= expected
        except TypeError:
            return False
        raise ValueError(f"unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Document:
    collection: str
    doc_id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class _PendingWrite:
    kind: Literal["set", "update"]
    collection: str
    doc_id: str
    data: dict[str, Any]


def _resolve_sentinels(data: dict[str, Any], commit_time: datetime) -> dict[str, Any]:
    return {key: (commit_time if value is SERVER_TIMESTAMP else value) for key, value in data.items()}


class WriteBatch:
    """Queues writes and applies them as one unit on ``commit``."""

    def __init__(self, store: "_BatchTarget") -> None:
        self._store = store
        self._writes: list[_PendingWrite] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(_PendingWrite("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(_PendingWrite("update", collection, doc_id, dict(data)))

    def commit(self) -> datetime:
        if self._committed:
            raise DocumentStoreError("batch already committed")
        commit_time = self._store._apply_writes(self._writes)
        self._committed = True
        return commit_time


class _BatchTarget(Protocol):
    def _apply_writes(self, writes: list[_PendingWrite]) -> datetime: ...


class DocumentStore(Protocol):
    def reset(self) -> None: ...

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def query(self, collection: str, filters: list[FieldFilter], *, limit: int | None = None) -> list[Document]: ...

    def batch(self) -> WriteBatch: ...


class InMemoryDocumentStore:
    """Lock-protected in-process document store with insertion-ordered collections."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def reset(self) -> None:
        with self._lock:
            self._collections.clear()

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            data = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(data) if data is not None else None

    def query(self, collection: str, filters: list[FieldFilter], *, limit: int | None = None) -> list[Document]:
        with self._lock:
            result: list[Document] = []
            for doc_id, data in self._collections.get(collection, {}).items():
                if not all(item.matches(data) for item in filters):
                    continue
                result.append(Document(collection=collection, doc_id=doc_id, data=copy.deepcopy(data)))
                if limit is not None and len(result) >= limit:
                    break
            return result

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _apply_writes(self, writes: list[_PendingWrite]) -> datetime:
        commit_time = _now_utc()
        with self._lock:
            staged = copy.deepcopy(self._collections)
            for write in writes:
                docs = staged.setdefault(write.collection, {})
                data = _resolve_sentinels(write.data, commit_time)
                if write.kind == "set":
                    docs[write.doc_id] = data
                    continue
                existing = docs.get(write.doc_id)
                if existing is None:
                    raise DocumentStoreError(f"cannot update missing document {write.collection}/{write.doc_id}")
                existing.update(data)
            self._collections = staged
        return commit_time


class DocumentsBase(DeclarativeBase):
    pass


class _DocumentRow(DocumentsBase):
    __tablename__ = "documents"
    __table_args__ = (Index("ix_documents_collection_created_at", "collection", "created_at"),)

    collection: Mapped[str] = mapped_column(String(128), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DocumentFieldRow(DocumentsBase):
    """One typed, indexable top-level scalar of a stored document."""

    __tablename__ = "document_fields"
    __table_args__ = (
        Index("ix_document_fields_bool", "collection", "field_name", "bool_value"),
        Index("ix_document_fields_num", "collection", "field_name", "num_value"),
        Index("ix_document_fields_text", "collection", "field_name", "text_value"),
        Index("ix_document_fields_ts", "collection", "field_name", "ts_value"),
    )

    collection: Mapped[str] = mapped_column(String(128), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    field_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    bool_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    num_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    text_value: Mapped[str | None] = mapped_column(String(INDEXED_TEXT_LENGTH), nullable=True)
    ts_value: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


_SQL_OPS = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _typed_value(value: Any) -> tuple[str, Any] | None:
    # bool before int: bool is an int subclass.
    if isinstance(value, bool):
        return "bool_value", value
    if isinstance(value, (int, float)):
        return "num_value", float(value)
    if isinstance(value, datetime):
        return "ts_value", _coerce_utc(value)
    if isinstance(value, str) and len(value) <= INDEXED_TEXT_LENGTH:
        return "text_value", value
    return None


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$ts": _coerce_utc(value).isoformat()}
    if isinstance(value, dict):
        return {key: _encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"$ts"}:
            return _coerce_utc(datetime.fromisoformat(value["$ts"]))
        return {key: _decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    return value


def _dump_payload(data: dict[str, Any]) -> str:
    return json.dumps(_encode_value(data), sort_keys=True, separators=(",", ":"))


def _load_payload(raw: str) -> dict[str, Any]:
    decoded = _decode_value(json.loads(raw))
    if not isinstance(decoded, dict):
        raise DocumentStoreError("stored document payload is not an object")
    return decoded


class SqlAlchemyDocumentStore:
    """Document store persisted as JSON rows in a ``documents`` table.

    Top-level scalars are mirrored into ``document_fields`` with one typed column per
    value kind, so ``query`` filters, orders and limits in SQL and only decodes the
    payloads it returns. A missing field, a ``None`` value or a type mismatch never
    matches, as with :class:`InMemoryDocumentStore`. Filter values that cannot be indexed
    (long strings, lists, maps) are checked in Python on the SQL-narrowed rows.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DOCUMENT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DocumentsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_DocumentFieldRow))
                session.execute(delete(_DocumentRow))

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            with self._session() as session:
                row = session.get(_DocumentRow, (collection, doc_id))
                if row is None:
                    return None
                return _load_payload(row.payload_json)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"failed to read {collection}/{doc_id}: {exc}") from exc

    def query(self, collection: str, filters: list[FieldFilter], *, limit: int | None = None) -> list[Document]:
        residual = [item for item in filters if item.value is not None and _typed_value(item.value) is None]
        statement = select(_DocumentRow).where(_DocumentRow.collection == collection)
        for item in filters:
            if item not in residual:
                statement = statement.where(_field_clause(collection, item))
        statement = statement.order_by(_DocumentRow.created_at.asc(), _DocumentRow.doc_id.asc())
        if limit is not None and not residual:
            statement = statement.limit(limit)
        try:
            with self._session() as session:
                result: list[Document] = []
                for row in session.execute(statement).scalars():
                    data = _load_payload(row.payload_json)
                    if not all(item.matches(data) for item in residual):
                        continue
                    result.append(Document(collection=collection, doc_id=row.doc_id, data=data))
                    if limit is not None and len(result) >= limit:
                        break
                return result
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"failed to query {collection}: {exc}") from exc

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _apply_writes(self, writes: list[_PendingWrite]) -> datetime:
        commit_time = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    for write in writes:
                        data = _resolve_sentinels(write.data, commit_time)
                        row = session.get(_DocumentRow, (write.collection, write.doc_id))
                        if write.kind == "update":
                            if row is None:
                                raise DocumentStoreError(
                                    f"cannot update missing document {write.collection}/{write.doc_id}"
                                )
                            merged = _load_payload(row.payload_json)
                            merged.update(data)
                            row.payload_json = _dump_payload(merged)
                            row.updated_at = commit_time
                            _replace_field_rows(session, write.collection, write.doc_id, merged)
                            continue
                        if row is None:
                            session.add(
                                _DocumentRow(
                                    collection=write.collection,
                                    doc_id=write.doc_id,
                                    payload_json=_dump_payload(data),
                                    created_at=commit_time,
                                    updated_at=commit_time,
                                )
                            )
                        else:
                            row.payload_json = _dump_payload(data)
                            row.updated_at = commit_time
                        _replace_field_rows(session, write.collection, write.doc_id, data)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"batch commit failed: {exc}") from exc
        return commit_time


def _field_clause(collection: str, item: FieldFilter) -> ColumnElement[bool]:
    compare = _SQL_OPS.get(item.op)
    if compare is None:
        raise ValueError(f"unsupported filter operator: {item.op}")
    typed = _typed_value(item.value)
    if typed is None:
        return false()
    column_name, value = typed
    column = getattr(_DocumentFieldRow, column_name)
    return _DocumentRow.doc_id.in_(
        select(_DocumentFieldRow.doc_id).where(
            _DocumentFieldRow.collection == collection,
            _DocumentFieldRow.field_name == item.field,
            compare(column, value),
        )
    )


def _replace_field_rows(session: Session, collection: str, doc_id: str, data: dict[str, Any]) -> None:
    session.execute(
        delete(_DocumentFieldRow).where(
            _DocumentFieldRow.collection == collection,
            _DocumentFieldRow.doc_id == doc_id,
        )
    )
    for field_name, value in data.items():
        typed = _typed_value(value)
        if typed is None:
            continue
        column_name, coerced = typed
        session.add(
            _DocumentFieldRow(collection=collection, doc_id=doc_id, field_name=field_name, **{column_name: coerced})
        )
    session.flush()


def create_document_store(*, backend: str, database_url: str) -> DocumentStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDocumentStore(database_url)
    if normalized == "inmemory":
        return InMemoryDocumentStore()
    raise RuntimeError(f"unsupported DOCUMENT_STORE_BACKEND: {backend}")
