"""Tests for the parse workflow: flyer image to persisted items and fan-out."""

from __future__ import annotations

import asyncio

from flyer_pipeline.engine.bus import InMemoryEventBus, to_envelope
from flyer_pipeline.engine.executor import WorkflowEngine
from flyer_pipeline.errors import TransientError
from flyer_pipeline.models.contracts import (
    EXTRACT_IMAGES_EVENT,
    MATCH_EVENT,
    EventEnvelope,
    ExtractionResult,
    ParseEvent,
    ParsePayload,
)
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.workflows.parse_flyer import (
    ParseFlyerWorkflow,
    fanout_event_id,
    item_from_offer,
    item_id_for,
)
from tests.fakes import FAST_RETRY, FakeDownloader, FakeExtractor, make_offer, no_sleep, seed_flyer

SOURCE_URL = "https://example.test/flyer.png"


def _event(event_id: str = "evt-parse-1") -> EventEnvelope:
    return to_envelope(
        ParseEvent(id=event_id, data=ParsePayload(flyer_id="flyer-1", source_url=SOURCE_URL))
    )


def _two_offers() -> ExtractionResult:
    return ExtractionResult(
        offers=[
            make_offer(product_name="Milk 1L", additional_info=["Fresh"]),
            make_offer(product_name="Bread", old_price=1.2, discount_price=0.99),
        ]
    )


class _SlowExtractor:
    async def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


class TestItemIds:
    """Item and fan-out ids are deterministic."""

    def test_item_id_stable(self) -> None:
        """The same flyer and index give the same id."""
        assert item_id_for("flyer-1", 0) == item_id_for("flyer-1", 0)
        assert item_id_for("flyer-1", 0) != item_id_for("flyer-1", 1)
        assert item_id_for("flyer-1", 0) != item_id_for("flyer-2", 0)

    def test_fanout_id_stable(self) -> None:
        """Event ids depend on run, kind and key."""
        assert fanout_event_id("run", "match", "a") == fanout_event_id("run", "match", "a")
        assert fanout_event_id("run", "match", "a") != fanout_event_id("run", "extract-images", "a")

    def test_item_from_offer(self) -> None:
        """Offer fields and search prefixes are copied onto the item."""
        item = item_from_offer("flyer-1", 2, make_offer(product_name="Milk", product_name_mk="Млеко"))
        assert item.id == item_id_for("flyer-1", 2)
        assert item.parent_flyer_id == "flyer-1"
        assert item.product_name_prefixes == ["M", "Mi", "Mil", "Milk"]
        assert item.product_name_prefixes_mk[-1] == "Млеко"
        assert item.matching_status == "pending"


class TestParseFlyerWorkflow:
    """End-to-end runs of the parse workflow on the in-memory engine."""

    async def test_happy_path(self, engine: WorkflowEngine, bus: InMemoryEventBus) -> None:
        """Offers become items, one match event each plus one image event."""
        extractor = FakeExtractor(_two_offers())
        workflow = ParseFlyerWorkflow(engine.repo, extractor, download=FakeDownloader())

        run = await engine.execute(workflow, _event())

        assert run.status == "completed"
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "completed"
        assert flyer.item_count == 2
        assert flyer.image_extraction_status == "pending"

        items = await engine.repo.list_items("flyer-1")
        assert {i.id for i in items} == {item_id_for("flyer-1", 0), item_id_for("flyer-1", 1)}
        assert {i.product_name for i in items} == {"Milk 1L", "Bread"}

        names = [e.name for e in bus.published]
        assert names.count(MATCH_EVENT) == 2
        assert names.count(EXTRACT_IMAGES_EVENT) == 1
        match = next(e for e in bus.published if e.name == MATCH_EVENT and e.data["name"] == "Milk 1L")
        assert match.data["metadata"]["keywords"] == ["milk", "1l", "fresh"]
        images = next(e for e in bus.published if e.name == EXTRACT_IMAGES_EVENT)
        assert len(images.data["items"]) == 2
        assert images.data["source_url"] == SOURCE_URL

    async def test_creates_missing_flyer(self, engine: WorkflowEngine) -> None:
        """A parse event for an unknown flyer creates the flyer document."""
        workflow = ParseFlyerWorkflow(engine.repo, FakeExtractor(_two_offers()), download=FakeDownloader())
        await engine.execute(workflow, _event())
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None and flyer.source_url == SOURCE_URL

    async def test_extraction_error_fails_flyer(self, engine: WorkflowEngine, bus: InMemoryEventBus) -> None:
        """An extraction error object marks the flyer failed with the reason."""
        extractor = FakeExtractor(ExtractionResult(error="NO_PRODUCTS_FOUND", reason="Blank page"))
        workflow = ParseFlyerWorkflow(engine.repo, extractor, download=FakeDownloader())

        run = await engine.execute(workflow, _event())

        assert run.status == "completed"
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "failed"
        assert flyer.failure_reason == "NO_PRODUCTS_FOUND: Blank page"
        assert await engine.repo.list_items("flyer-1") == []
        assert bus.published == []

    async def test_download_retried(self, engine: WorkflowEngine) -> None:
        """Transient download errors are retried within the step."""
        download = FakeDownloader(TransientError("reset"), TransientError("reset"))
        workflow = ParseFlyerWorkflow(engine.repo, FakeExtractor(_two_offers()), download=download)

        run = await engine.execute(workflow, _event())

        assert run.status == "completed"
        assert len(download.calls) == 3

    async def test_download_exhausted_fails_flyer(self, engine: WorkflowEngine) -> None:
        """When retries run out the failure hook marks the flyer failed."""
        download = FakeDownloader(*(TransientError("connection reset") for _ in range(3)))
        extractor = FakeExtractor(_two_offers())
        workflow = ParseFlyerWorkflow(engine.repo, extractor, download=download)

        run = await engine.execute(workflow, _event())

        assert run.status == "failed"
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "failed"
        assert "connection reset" in (flyer.failure_reason or "")
        assert extractor.calls == 0

    async def test_completed_flyer_skipped(self, engine: WorkflowEngine) -> None:
        """A flyer that already finished is not parsed again."""
        await seed_flyer(engine.repo, processing_status="completed", item_count=4)
        extractor = FakeExtractor(_two_offers())
        workflow = ParseFlyerWorkflow(engine.repo, extractor, download=FakeDownloader())

        run = await engine.execute(workflow, _event())

        assert run.status == "completed"
        assert extractor.calls == 0
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None and flyer.item_count == 4

    async def test_redelivered_event_not_rerun(self, engine: WorkflowEngine) -> None:
        """The same event delivered twice runs the workflow once."""
        extractor = FakeExtractor(_two_offers())
        workflow = ParseFlyerWorkflow(engine.repo, extractor, download=FakeDownloader())

        await engine.execute(workflow, _event())
        await engine.execute(workflow, _event())

        assert extractor.calls == 1
        assert len(await engine.repo.list_items("flyer-1")) == 2

    async def test_fan_out_failure_still_completes_flyer(self, repo: Repository) -> None:
        """Publishing failures are logged, the flyer still completes."""

        class _DownBus:
            async def publish(self, event: object) -> str:
                raise TransientError("broker down")

            def subscribe(self, event_name: str, handler: object) -> None:
                return None

        engine = WorkflowEngine(repo, _DownBus(), default_policy=FAST_RETRY, sleep=no_sleep)  # type: ignore[arg-type]
        workflow = ParseFlyerWorkflow(repo, FakeExtractor(_two_offers()), download=FakeDownloader())

        run = await engine.execute(workflow, _event())

        assert run.status == "completed"
        flyer = await repo.get_flyer("flyer-1")
        assert flyer is not None and flyer.processing_status == "completed"
        fan_out = await repo.get_step(run.id, "fan-out")
        assert fan_out is not None
        assert len(fan_out.result["failed"]) == 3

    async def test_watchdog_leaves_no_flyer_processing(
        self, engine: WorkflowEngine, bus: InMemoryEventBus
    ) -> None:
        """A parse run cut off by its deadline marks the flyer failed and fans out nothing."""
        await seed_flyer(engine.repo)
        workflow = ParseFlyerWorkflow(
            engine.repo, _SlowExtractor(), download=FakeDownloader(), extraction_timeout=30
        )
        workflow.deadline_seconds = 0.05

        run = await engine.execute(workflow, _event())

        assert run.status == "failed"
        flyer = await engine.repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "failed"
        assert "deadline" in (flyer.failure_reason or "")
        assert bus.published == []
