"""Tests for the in-memory document store and the repository on top of it."""

from __future__ import annotations

import asyncio

import pytest

from flyer_pipeline.errors import NotFoundError, TransientError
from flyer_pipeline.models.entities import StepRecord, WorkflowRun, utcnow
from flyer_pipeline.store.base import FLYERS, Transaction
from flyer_pipeline.store.memory import InMemoryDocumentStore
from flyer_pipeline.store.repository import Repository, step_key
from tests.fakes import make_item, seed_flyer


class TestDocumentOperations:
    """Basic get/create/set/update/query."""

    async def test_create_is_insert_if_absent(self, store: InMemoryDocumentStore) -> None:
        """A second create with the same id is refused and changes nothing."""
        assert await store.create(FLYERS, "f1", {"a": 1})
        assert not await store.create(FLYERS, "f1", {"a": 2})
        assert await store.get(FLYERS, "f1") == {"a": 1}

    async def test_update_merges_fields(self, store: InMemoryDocumentStore) -> None:
        """update merges top-level fields."""
        await store.set(FLYERS, "f1", {"a": 1, "b": 2})
        await store.update(FLYERS, "f1", {"b": 3})
        assert await store.get(FLYERS, "f1") == {"a": 1, "b": 3}

    async def test_update_missing_raises(self, store: InMemoryDocumentStore) -> None:
        """Updating a missing document is an error."""
        with pytest.raises(NotFoundError):
            await store.update(FLYERS, "missing", {"a": 1})

    async def test_returned_documents_are_copies(self, store: InMemoryDocumentStore) -> None:
        """Mutating a read document does not change the store."""
        await store.set(FLYERS, "f1", {"tags": ["x"]})
        doc = await store.get(FLYERS, "f1")
        assert doc is not None
        doc["tags"].append("y")
        assert await store.get(FLYERS, "f1") == {"tags": ["x"]}

    async def test_query_filters_by_equality(self, store: InMemoryDocumentStore) -> None:
        """query returns documents whose fields equal every filter."""
        await store.set(FLYERS, "f1", {"status": "a"})
        await store.set(FLYERS, "f2", {"status": "b"})
        assert await store.query(FLYERS, status="b") == [{"status": "b"}]


class TestTransactions:
    """Optimistic transactions re-run on conflict and write atomically."""

    async def test_writes_apply_together(self, store: InMemoryDocumentStore) -> None:
        """All staged writes land on commit."""
        await store.set(FLYERS, "f1", {"n": 1})

        async def _fn(tx: Transaction) -> str:
            doc = await tx.get(FLYERS, "f1")
            assert doc is not None
            tx.update(FLYERS, "f1", {"n": doc["n"] + 1})
            tx.set(FLYERS, "f2", {"n": 0})
            return "done"

        assert await store.run_transaction(_fn) == "done"
        assert await store.get(FLYERS, "f1") == {"n": 2}
        assert await store.get(FLYERS, "f2") == {"n": 0}

    async def test_exception_discards_writes(self, store: InMemoryDocumentStore) -> None:
        """A callback that raises commits nothing."""
        await store.set(FLYERS, "f1", {"n": 1})

        async def _fn(tx: Transaction) -> None:
            tx.update(FLYERS, "f1", {"n": 99})
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await store.run_transaction(_fn)
        assert await store.get(FLYERS, "f1") == {"n": 1}

    async def test_conflict_reruns_callback(self, store: InMemoryDocumentStore) -> None:
        """A concurrent write between read and commit re-runs the callback."""
        await store.set(FLYERS, "f1", {"n": 0})
        attempts = 0

        async def _fn(tx: Transaction) -> None:
            nonlocal attempts
            attempts += 1
            doc = await tx.get(FLYERS, "f1")
            assert doc is not None
            if attempts == 1:
                await store.update(FLYERS, "f1", {"n": 10})
            tx.update(FLYERS, "f1", {"n": doc["n"] + 1})

        await store.run_transaction(_fn)
        assert attempts == 2
        assert await store.get(FLYERS, "f1") == {"n": 11}

    async def test_concurrent_increments_are_serialized(self, store: InMemoryDocumentStore) -> None:
        """Many interleaved read-modify-write transactions lose no update."""
        await store.set(FLYERS, "f1", {"n": 0})

        async def _increment(tx: Transaction) -> None:
            doc = await tx.get(FLYERS, "f1")
            assert doc is not None
            await asyncio.sleep(0)
            tx.update(FLYERS, "f1", {"n": doc["n"] + 1})

        await asyncio.gather(*(store.run_transaction(_increment, max_attempts=50) for _ in range(10)))
        assert await store.get(FLYERS, "f1") == {"n": 10}

    async def test_gives_up_after_max_attempts(self, store: InMemoryDocumentStore) -> None:
        """Endless conflicts end in a retryable error."""
        await store.set(FLYERS, "f1", {"n": 0})

        async def _fn(tx: Transaction) -> None:
            await tx.get(FLYERS, "f1")
            await store.update(FLYERS, "f1", {"n": 1})

        with pytest.raises(TransientError):
            await store.run_transaction(_fn, max_attempts=3)


class TestRepository:
    """Typed accessors and monotonic status transitions."""

    async def test_flyer_transition_forward_only(self, repo: Repository) -> None:
        """A completed flyer never goes back to processing."""
        await seed_flyer(repo)
        assert await repo.transition_flyer_status("flyer-1", "processing")
        assert await repo.transition_flyer_status("flyer-1", "completed", item_count=3)
        assert not await repo.transition_flyer_status("flyer-1", "processing")

        flyer = await repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "completed"
        assert flyer.item_count == 3

    async def test_item_transition_refused_keeps_fields(self, repo: Repository) -> None:
        """A refused transition writes none of its extra fields."""
        await repo.create_item(make_item(matching_status="applied_to_product"))
        assert not await repo.transition_item_status("item-1", "failed", matching_error="late")
        item = await repo.require_item("item-1")
        assert item.matching_status == "applied_to_product"
        assert item.matching_error is None

    async def test_transition_missing_document(self, repo: Repository) -> None:
        """Transitioning a missing entity raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await repo.transition_item_status("nope", "processing")

    async def test_list_items_by_flyer(self, repo: Repository) -> None:
        """Items are listed per parent flyer."""
        await repo.create_item(make_item(id="a"))
        await repo.create_item(make_item(id="b", parent_flyer_id="flyer-2"))
        assert [item.id for item in await repo.list_items("flyer-1")] == ["a"]

    async def test_finish_run_only_once(self, repo: Repository) -> None:
        """A finished run is not finished again."""
        run = WorkflowRun(id="r1", workflow_name="w", event_id="e", event_name="n", triggering_event={})
        await repo.create_run(run)
        assert await repo.finish_run("r1", "failed", "boom")
        assert not await repo.finish_run("r1", "completed")
        stored = await repo.get_run("r1")
        assert stored is not None
        assert stored.status == "failed"
        assert stored.error == "boom"
        assert stored.finished_at is not None

    async def test_steps_keyed_by_run_and_name(self, repo: Repository) -> None:
        """Step records are stored under ``{run_id}::{step_name}``."""
        record = StepRecord(run_id="r1", step_name="search", status="completed", attempt=1, started_at=utcnow())
        await repo.save_step(record)
        assert step_key("r1", "search") == "r1::search"
        fetched = await repo.get_step("r1", "search")
        assert fetched is not None and fetched.status == "completed"
        assert [s.step_name for s in await repo.list_steps("r1")] == ["search"]
