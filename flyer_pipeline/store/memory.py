"""In-process document store with optimistic transactions.

Every document carries a version. A transaction records the version of each
document it reads; at commit time (a single synchronous block, so nothing
else on the event loop can interleave) the versions are re-checked and the
callback is re-run if any changed.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from flyer_pipeline.errors import NotFoundError, TransientError
from flyer_pipeline.store.base import DEFAULT_TRANSACTION_ATTEMPTS, Transaction

logger = structlog.get_logger()

T = TypeVar("T")

_Key = tuple[str, str]


class _MemoryTransaction:
    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        self.reads: dict[_Key, int] = {}
        self.writes: list[tuple[str, _Key, dict[str, Any]]] = []

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        key = (collection, doc_id)
        version, data = self._store._docs.get(key, (0, None))
        self.reads[key] = version
        return copy.deepcopy(data)

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.writes.append(("set", (collection, doc_id), copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self.writes.append(("update", (collection, doc_id), copy.deepcopy(fields)))


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._docs: dict[_Key, tuple[int, dict[str, Any]]] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        entry = self._docs.get((collection, doc_id))
        return copy.deepcopy(entry[1]) if entry else None

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        key = (collection, doc_id)
        if key in self._docs:
            return False
        self._docs[key] = (1, copy.deepcopy(data))
        return True

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._write((collection, doc_id), copy.deepcopy(data))

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        key = (collection, doc_id)
        entry = self._docs.get(key)
        if entry is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        self._write(key, {**entry[1], **copy.deepcopy(fields)})

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(data)
            for (coll, _), (_, data) in self._docs.items()
            if coll == collection and all(data.get(k) == v for k, v in equals.items())
        ]

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        for attempt in range(1, max_attempts + 1):
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            if self._commit(tx):
                return result
            logger.debug("transaction_conflict_retry", attempt=attempt)
        raise TransientError(f"Transaction aborted after {max_attempts} conflicting attempts")

    async def close(self) -> None:
        return None

    def _write(self, key: _Key, data: dict[str, Any]) -> None:
        version = self._docs[key][0] if key in self._docs else 0
        self._docs[key] = (version + 1, data)

    def _commit(self, tx: _MemoryTransaction) -> bool:
        for key, version in tx.reads.items():
            current = self._docs[key][0] if key in self._docs else 0
            if current != version:
                return False

        staged: dict[_Key, dict[str, Any] | None] = {}
        for op, key, data in tx.writes:
            if key not in staged:
                entry = self._docs.get(key)
                staged[key] = entry[1] if entry else None
            if op == "set":
                staged[key] = data
            else:
                base = staged[key]
                if base is None:
                    raise NotFoundError(f"{key[0]}/{key[1]} not found")
                staged[key] = {**base, **data}

        for key, data in staged.items():
            if data is not None:
                self._write(key, data)
        return True
