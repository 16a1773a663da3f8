"""PostgreSQL document store (SQLAlchemy async + asyncpg).

Transactions lock every document they read with ``SELECT ... FOR UPDATE``
and apply their queued writes before the session commits. Serialization
failures and deadlocks re-run the callback.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flyer_pipeline.config import settings
from flyer_pipeline.errors import NotFoundError, TransientError
from flyer_pipeline.models.db import INDEXED_FIELDS, ROW_MODELS
from flyer_pipeline.store.base import DEFAULT_TRANSACTION_ATTEMPTS, Transaction

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE_SQLSTATES = {"40001", "40P01"}  # serialization_failure, deadlock_detected


def _model(collection: str) -> Any:
    try:
        return ROW_MODELS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def _indexed_columns(collection: str, data: dict[str, Any]) -> dict[str, Any]:
    return {column: data.get(field) for field, column in INDEXED_FIELDS.get(collection, {}).items()}


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    state = getattr(orig, "sqlstate", None)
    if state is None and orig is not None:
        state = getattr(orig.__cause__, "sqlstate", None)
    return state


class _SqlTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._rows: dict[tuple[str, str], Any] = {}
        self._writes: list[tuple[str, str, str, dict[str, Any]]] = []

    async def _locked_row(self, collection: str, doc_id: str) -> Any:
        key = (collection, doc_id)
        if key not in self._rows:
            self._rows[key] = await self._session.get(
                _model(collection), doc_id, with_for_update=True
            )
        return self._rows[key]

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = await self._locked_row(collection, doc_id)
        return copy.deepcopy(row.data) if row is not None else None

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(("set", collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, copy.deepcopy(fields)))

    async def apply(self) -> None:
        for op, collection, doc_id, data in self._writes:
            row = await self._locked_row(collection, doc_id)
            if row is None:
                if op == "update":
                    raise NotFoundError(f"{collection}/{doc_id} not found")
                row = _model(collection)(
                    id=doc_id, data=data, version=1, **_indexed_columns(collection, data)
                )
                self._session.add(row)
                self._rows[(collection, doc_id)] = row
                continue
            merged = data if op == "set" else {**row.data, **data}
            row.data = merged
            row.version = row.version + 1
            for column, value in _indexed_columns(collection, merged).items():
                setattr(row, column, value)


class SqlDocumentStore:
    def __init__(self, database_url: str | None = None, *, engine: AsyncEngine | None = None) -> None:
        self._engine = engine or create_async_engine(
            database_url or settings.database_url, pool_pre_ping=True
        )
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with self._sessions() as session:
            row = await session.get(_model(collection), doc_id)
            return copy.deepcopy(row.data) if row is not None else None

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        model = _model(collection)
        stmt = (
            pg_insert(model)
            .values(id=doc_id, data=data, version=1, **_indexed_columns(collection, data))
            .on_conflict_do_nothing(index_elements=["id"])
        )
        async with self._sessions.begin() as session:
            result = await session.execute(stmt)
        return bool(result.rowcount)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        model = _model(collection)
        indexed = _indexed_columns(collection, data)
        stmt = pg_insert(model).values(id=doc_id, data=data, version=1, **indexed)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"data": data, "version": model.version + 1, "updated_at": func.now(), **indexed},
        )
        async with self._sessions.begin() as session:
            await session.execute(stmt)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        async with self._sessions.begin() as session:
            tx = _SqlTransaction(session)
            if await tx.get(collection, doc_id) is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            tx.update(collection, doc_id, fields)
            await tx.apply()

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        model = _model(collection)
        stmt = select(model)
        if equals:
            stmt = stmt.where(model.data.contains(equals))
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [copy.deepcopy(row.data) for row in rows]

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._sessions.begin() as session:
                    tx = _SqlTransaction(session)
                    result = await fn(tx)
                    await tx.apply()
                return result
            except DBAPIError as exc:
                if _sqlstate(exc) not in _RETRYABLE_SQLSTATES:
                    raise
                logger.warning("transaction_conflict_retry", attempt=attempt, sqlstate=_sqlstate(exc))
        raise TransientError(f"Transaction aborted after {max_attempts} conflicting attempts")

    async def close(self) -> None:
        await self._engine.dispose()
