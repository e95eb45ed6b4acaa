"""
database.py — SQLAlchemy-backed document store and session management.

Pages, jobs, geo records and fingerprints are schemaless JSON documents grouped
into named collections, so a single `documents` table holds all of them. Uses
PostgreSQL in production (via DATABASE_URL) and falls back to SQLite locally.

DocumentStore is the async facade the orchestrators talk to. Every call runs
the blocking SQLAlchemy work in an executor, so each read or write is a point
where other jobs and requests can interleave.
"""

import asyncio
import copy
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import JSON, Column, DateTime, String, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import DATABASE_URL, STORE_BATCH_LIMIT, STORE_WORKERS

logger = logging.getLogger("pagegen.store")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def make_engine(url: str):
    # Some hosts expose postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return create_engine(
        url,
        # SQLite needs this flag; ignored by Postgres
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def utcnow() -> str:
    """ISO-8601 UTC timestamp. Lexicographic order matches time order."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"

    collection = Column(String(100), primary_key=True)
    doc_id     = Column(String(512), primary_key=True)
    data       = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_QUOTA_MARKERS = ("quota", "disk is full", "no space left", "resource exhausted", "too many connections")


class StoreWriteError(Exception):
    """A write that the backend refused. `code` separates retryable quota problems from the rest."""

    def __init__(self, message: str, code: str = "write_failed"):
        super().__init__(message)
        self.code = code


def _classify_write_error(exc: Exception) -> str:
    text = str(exc).lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return "quota_exceeded"
    return "write_failed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, patch: dict) -> dict:
    """Merge `patch` into a copy of `base`. Nested dicts merge; lists and scalars are replaced."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _strip_id(data: dict) -> dict:
    return {k: v for k, v in data.items() if k != "id"}


def _snapshot(row: Document) -> dict:
    return {"id": row.doc_id, **copy.deepcopy(row.data or {})}


def _json_field(path: str, sample: Any):
    """Typed SQL expression for a dotted JSON path, cast to match the compared value."""
    parts = tuple(path.split("."))
    expr = Document.data[parts] if len(parts) > 1 else Document.data[parts[0]]
    if isinstance(sample, bool):
        return expr.as_boolean()
    if isinstance(sample, int):
        return expr.as_integer()
    if isinstance(sample, float):
        return expr.as_float()
    return expr.as_string()


def _filter_clause(path: str, op: str, value: Any):
    if op == "in":
        values = list(value)
        field = _json_field(path, values[0] if values else "")
        return field.in_(values)
    field = _json_field(path, value)
    if op == "==":
        return field == value
    if op == "!=":
        return field != value
    if op == ">":
        return field > value
    if op == ">=":
        return field >= value
    if op == "<":
        return field < value
    if op == "<=":
        return field <= value
    raise ValueError(f"Unsupported filter operator: {op}")


Filter = tuple  # (dotted_path, op, value)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class WriteBatch:
    """A bounded group of upserts committed together in one transaction."""

    def __init__(self, store: "DocumentStore", limit: int):
        self._store = store
        self._limit = limit
        self._ops: list[tuple[str, str, dict, bool]] = []

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def full(self) -> bool:
        return len(self._ops) >= self._limit

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        if self.full:
            raise ValueError(f"Write batch is limited to {self._limit} operations")
        self._ops.append((collection, doc_id, _strip_id(data), merge))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.set(collection, doc_id, data, merge=True)

    async def commit(self) -> int:
        ops, self._ops = self._ops, []
        if not ops:
            return 0
        await self._store._run(self._store._apply_writes, ops)
        return len(ops)


class DocumentStore:
    """
    Async document store over SQLAlchemy.

    Supports get-by-key, equality/range filters on dotted JSON paths, id-ordered
    scans with `start_after` cursors, count queries, bounded write batches and a
    multi-document read-modify-write transaction.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        batch_limit: int = STORE_BATCH_LIMIT,
        workers: int = STORE_WORKERS,
    ):
        self._session_factory = session_factory or SessionLocal
        self.batch_limit = batch_limit
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="docstore")

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "DocumentStore":
        """Build a store with its own engine and make sure the table exists."""
        eng = make_engine(url)
        init_db(eng)
        return cls(sessionmaker(bind=eng, autocommit=False, autoflush=False), **kwargs)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    async def _run(self, fn: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    # -- sync implementations (run inside the executor) ---------------------

    def _get_sync(self, collection: str, doc_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.get(Document, (collection, doc_id))
            return _snapshot(row) if row else None
        finally:
            db.close()

    def _get_all_sync(self, collection: str, doc_ids: list[str]) -> list[Optional[dict]]:
        if not doc_ids:
            return []
        db = self._session_factory()
        try:
            rows = db.scalars(
                select(Document).where(Document.collection == collection, Document.doc_id.in_(doc_ids))
            ).all()
            by_id = {r.doc_id: _snapshot(r) for r in rows}
            return [by_id.get(doc_id) for doc_id in doc_ids]
        finally:
            db.close()

    def _apply_writes(self, ops: list[tuple[str, str, dict, bool]]) -> None:
        db = self._session_factory()
        try:
            for collection, doc_id, data, merge in ops:
                row = db.get(Document, (collection, doc_id))
                if row is None:
                    db.add(Document(collection=collection, doc_id=doc_id, data=copy.deepcopy(data)))
                elif merge:
                    # Assign a new dict so SQLAlchemy sees the JSON column change
                    row.data = deep_merge(row.data or {}, data)
                else:
                    row.data = copy.deepcopy(data)
                # A batch may touch the same document twice
                db.flush()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            code = _classify_write_error(e)
            logger.error(f"Store write failed ({code}): {type(e).__name__}: {e}")
            raise StoreWriteError(str(e), code=code) from e
        finally:
            db.close()

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        db = self._session_factory()
        try:
            row = db.get(Document, (collection, doc_id))
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(str(e), code=_classify_write_error(e)) from e
        finally:
            db.close()

    def _build_query(self, stmt, collection: str, filters: Iterable[Filter]):
        stmt = stmt.where(Document.collection == collection)
        for path, op, value in filters:
            stmt = stmt.where(_filter_clause(path, op, value))
        return stmt

    def _query_sync(
        self,
        collection: str,
        filters: tuple,
        order_by: Optional[str],
        descending: bool,
        start_after: Optional[str],
        limit: Optional[int],
    ) -> list[dict]:
        db = self._session_factory()
        try:
            stmt = self._build_query(select(Document), collection, filters)
            if order_by:
                field = _json_field(order_by, "")
                stmt = stmt.order_by(field.desc() if descending else field.asc())
            if start_after is not None:
                stmt = stmt.where(Document.doc_id < start_after if descending else Document.doc_id > start_after)
            stmt = stmt.order_by(Document.doc_id.desc() if descending else Document.doc_id.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [_snapshot(r) for r in db.scalars(stmt).all()]
        finally:
            db.close()

    def _count_sync(self, collection: str, filters: tuple) -> int:
        db = self._session_factory()
        try:
            stmt = self._build_query(select(func.count()).select_from(Document), collection, filters)
            return int(db.scalar(stmt) or 0)
        finally:
            db.close()

    def _transact_sync(self, refs: list[tuple[str, str]], fn: Callable[[dict], tuple]):
        db = self._session_factory()
        try:
            rows: dict[tuple[str, str], Optional[Document]] = {}
            for collection, doc_id in refs:
                rows[(collection, doc_id)] = db.scalars(
                    select(Document)
                    .where(Document.collection == collection, Document.doc_id == doc_id)
                    .with_for_update()
                ).first()
            current = {ref: (copy.deepcopy(row.data) if row else None) for ref, row in rows.items()}
            writes, result = fn(current)
            for (collection, doc_id), new_data in (writes or {}).items():
                row = rows.get((collection, doc_id))
                if row is None:
                    db.add(Document(collection=collection, doc_id=doc_id, data=_strip_id(new_data)))
                else:
                    row.data = _strip_id(new_data)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(str(e), code=_classify_write_error(e)) from e
        finally:
            db.close()

    # -- async API ----------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await self._run(self._get_sync, collection, doc_id)

    async def get_all(self, collection: str, doc_ids: list[str]) -> list[Optional[dict]]:
        return await self._run(self._get_all_sync, collection, list(doc_ids))

    async def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        await self._run(self._apply_writes, [(collection, doc_id, _strip_id(data), merge)])

    async def add(self, collection: str, data: dict) -> str:
        doc_id = uuid.uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._run(self._delete_sync, collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        start_after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Documents matching every filter, ordered by `order_by` (if given) then document id."""
        return await self._run(
            self._query_sync, collection, tuple(filters), order_by, descending, start_after, limit
        )

    async def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        return await self._run(self._count_sync, collection, tuple(filters))

    async def transact(self, refs: list[tuple[str, str]], fn: Callable[[dict], tuple]):
        """
        Read-modify-write a set of documents inside a single database transaction.

        `fn(current)` receives `{(collection, doc_id): data_or_None}` and returns
        `(writes, result)`, where `writes` maps refs to their replacement data and
        `result` is handed back to the caller.
        """
        return await self._run(self._transact_sync, list(refs), fn)

    def batch(self) -> WriteBatch:
        return WriteBatch(self, self.batch_limit)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def init_db(bind=None) -> None:
    """Create the documents table. Safe to call on every startup."""
    Base.metadata.create_all(bind=bind or engine)


_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """FastAPI dependency: the process-wide store bound to DATABASE_URL."""
    global _store
    if _store is None:
        _store = DocumentStore()
    return _store
