"""Typed access to pipeline documents on top of a DocumentStore."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic_core import to_jsonable_python

from flyer_pipeline.errors import NotFoundError
from flyer_pipeline.models.entities import (
    AutoApprovalRule,
    CatalogEntry,
    Flyer,
    FlyerItem,
    StepRecord,
    WorkflowRun,
    can_transition,
    utcnow,
)
from flyer_pipeline.store.base import (
    APPROVAL_RULES,
    CATALOG_ENTRIES,
    FLYER_ITEMS,
    FLYERS,
    STEP_RECORDS,
    WORKFLOW_RUNS,
    DocumentStore,
    Transaction,
)

logger = structlog.get_logger()


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return to_jsonable_python(fields)  # type: ignore[no-any-return]


def step_key(run_id: str, step_name: str) -> str:
    return f"{run_id}::{step_name}"


class Repository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # === Flyers ===

    async def create_flyer(self, flyer: Flyer) -> bool:
        return await self.store.create(FLYERS, flyer.id, flyer.model_dump(mode="json"))

    async def get_flyer(self, flyer_id: str) -> Flyer | None:
        doc = await self.store.get(FLYERS, flyer_id)
        return Flyer.model_validate(doc) if doc else None

    async def update_flyer(self, flyer_id: str, **fields: Any) -> None:
        fields["updated_at"] = utcnow()
        await self.store.update(FLYERS, flyer_id, _jsonable(fields))

    async def transition_flyer_status(self, flyer_id: str, status: str, **fields: Any) -> bool:
        """Move a flyer's processing status forward. False if the move was refused."""
        return await self._transition(
            FLYERS, flyer_id, "processing_status", status, {**fields, "updated_at": utcnow()}
        )

    # === Items ===

    async def create_item(self, item: FlyerItem) -> bool:
        return await self.store.create(FLYER_ITEMS, item.id, item.model_dump(mode="json"))

    async def get_item(self, item_id: str) -> FlyerItem | None:
        doc = await self.store.get(FLYER_ITEMS, item_id)
        return FlyerItem.model_validate(doc) if doc else None

    async def require_item(self, item_id: str) -> FlyerItem:
        item = await self.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Flyer item {item_id} not found")
        return item

    async def list_items(self, flyer_id: str) -> list[FlyerItem]:
        docs = await self.store.query(FLYER_ITEMS, parent_flyer_id=flyer_id)
        items = [FlyerItem.model_validate(doc) for doc in docs]
        return sorted(items, key=lambda item: (item.created_at, item.id))

    async def update_item(self, item_id: str, **fields: Any) -> None:
        await self.store.update(FLYER_ITEMS, item_id, _jsonable(fields))

    async def transition_item_status(self, item_id: str, status: str, **fields: Any) -> bool:
        """Move an item's matching status forward. False if the move was refused."""
        return await self._transition(FLYER_ITEMS, item_id, "matching_status", status, fields)

    # === Catalog and rules ===

    async def get_catalog_entry(self, entry_id: str) -> CatalogEntry | None:
        doc = await self.store.get(CATALOG_ENTRIES, entry_id)
        return CatalogEntry.model_validate(doc) if doc else None

    async def list_catalog_entries(self) -> list[CatalogEntry]:
        return [CatalogEntry.model_validate(doc) for doc in await self.store.query(CATALOG_ENTRIES)]

    async def save_catalog_entry(self, entry: CatalogEntry) -> None:
        await self.store.set(CATALOG_ENTRIES, entry.id, entry.model_dump(mode="json"))

    async def active_rules(self) -> list[AutoApprovalRule]:
        docs = await self.store.query(APPROVAL_RULES, is_active=True)
        return [AutoApprovalRule.model_validate(doc) for doc in docs]

    async def save_rule(self, rule: AutoApprovalRule) -> None:
        await self.store.set(APPROVAL_RULES, rule.id, rule.model_dump(mode="json"))

    # === Runs and steps ===

    async def create_run(self, run: WorkflowRun) -> bool:
        return await self.store.create(WORKFLOW_RUNS, run.id, run.model_dump(mode="json"))

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        doc = await self.store.get(WORKFLOW_RUNS, run_id)
        return WorkflowRun.model_validate(doc) if doc else None

    async def update_run(self, run_id: str, **fields: Any) -> None:
        await self.store.update(WORKFLOW_RUNS, run_id, _jsonable(fields))

    async def finish_run(self, run_id: str, status: str, error: str | None = None) -> bool:
        """Mark a run terminal unless it already is. False if it was already finished."""

        async def _finish(tx: Transaction) -> bool:
            doc = await tx.get(WORKFLOW_RUNS, run_id)
            if doc is None or doc["status"] in ("completed", "failed"):
                return False
            tx.update(
                WORKFLOW_RUNS,
                run_id,
                _jsonable({"status": status, "error": error, "finished_at": utcnow()}),
            )
            return True

        return await self.store.run_transaction(_finish)

    async def list_runs(self, status: str) -> list[WorkflowRun]:
        docs = await self.store.query(WORKFLOW_RUNS, status=status)
        return [WorkflowRun.model_validate(doc) for doc in docs]

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        doc = await self.store.get(STEP_RECORDS, step_key(run_id, step_name))
        return StepRecord.model_validate(doc) if doc else None

    async def save_step(self, record: StepRecord) -> None:
        await self.store.set(
            STEP_RECORDS, step_key(record.run_id, record.step_name), record.model_dump(mode="json")
        )

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        docs = await self.store.query(STEP_RECORDS, run_id=run_id)
        records = [StepRecord.model_validate(doc) for doc in docs]
        return sorted(records, key=lambda record: record.started_at)

    # ---

    async def _transition(
        self,
        collection: str,
        doc_id: str,
        status_field: str,
        status: str,
        fields: dict[str, Any],
    ) -> bool:
        async def _apply(tx: Transaction) -> bool:
            doc = await tx.get(collection, doc_id)
            if doc is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            current = doc.get(status_field)
            if not can_transition(current, status):
                logger.info(
                    "status_transition_refused",
                    collection=collection,
                    doc_id=doc_id,
                    current=current,
                    requested=status,
                )
                return False
            tx.update(collection, doc_id, _jsonable({**fields, status_field: status}))
            return True

        return await self.store.run_transaction(_apply)
