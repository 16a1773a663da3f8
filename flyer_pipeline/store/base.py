"""Document store interface.

Documents are JSON objects addressed by ``(collection, id)``. The only
cross-document consistency primitive is ``run_transaction``: the callback
reads through the transaction, queues writes on it, and the store commits
them atomically or retries the callback on contention.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")

FLYERS = "flyers"
FLYER_ITEMS = "flyer_items"
CATALOG_ENTRIES = "catalog_entries"
APPROVAL_RULES = "auto_approval_rules"
WORKFLOW_RUNS = "workflow_runs"
STEP_RECORDS = "step_records"

COLLECTIONS = (
    FLYERS,
    FLYER_ITEMS,
    CATALOG_ENTRIES,
    APPROVAL_RULES,
    WORKFLOW_RUNS,
    STEP_RECORDS,
)

DEFAULT_TRANSACTION_ATTEMPTS = 5


class Transaction(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Read a document and pin its version for the commit check."""

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Queue a full replacement of the document."""

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Queue a shallow merge of ``fields`` into an existing document."""


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return a copy of the document, or None."""

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        """Insert the document if absent. Returns False when it already existed."""

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Insert or fully replace the document."""

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Shallow-merge ``fields`` into the document. Raises NotFoundError if missing."""

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        """Return documents whose top-level fields equal every keyword given."""

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        """Run ``fn`` and commit its queued writes atomically."""

    async def close(self) -> None:
        """Release connections."""
