"""End-to-end pipeline run on the in-process bus.

One parse event flows through extraction, fan-out, per-item matching with
auto-approval and discounting, and image extraction. All AI collaborators
and the object store are fakes; the engine, bus, store and workflows are real.
"""

from __future__ import annotations

import pytest

from flyer_pipeline.activities.auto_approval import AutoApprovalEvaluator
from flyer_pipeline.activities.discount import DiscountService
from flyer_pipeline.activities.product_images import ProductImageExtractor
from flyer_pipeline.catalog import StoreCatalogClient
from flyer_pipeline.engine.bus import InMemoryEventBus
from flyer_pipeline.engine.executor import WorkflowEngine
from flyer_pipeline.models.contracts import (
    ExtractionResult,
    ParseEvent,
    ParsePayload,
    StatusUpdateEvent,
    StatusUpdatePayload,
)
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.workflows.extract_images import ExtractImagesWorkflow
from flyer_pipeline.workflows.match_item import MatchItemWorkflow
from flyer_pipeline.workflows.parse_flyer import ParseFlyerWorkflow, item_id_for
from flyer_pipeline.workflows.status_update import StatusUpdateWorkflow
from tests.fakes import (
    FakeDownloader,
    FakeExtractor,
    FakeImageGenerator,
    FakeJudge,
    FakeObjectStore,
    FakeScorer,
    make_entry,
    make_offer,
    make_rule,
)


@pytest.fixture()
async def pipeline(repo: Repository, bus: InMemoryEventBus, engine: WorkflowEngine) -> FakeObjectStore:
    await repo.save_catalog_entry(make_entry())
    await repo.save_rule(make_rule())

    objects = FakeObjectStore()
    extractor = FakeExtractor(
        ExtractionResult(
            offers=[
                make_offer(product_name="Milk 1L"),
                make_offer(product_name="Sourdough loaf", old_price=3.0, discount_price=2.5),
            ]
        )
    )
    for workflow in (
        ParseFlyerWorkflow(repo, extractor, download=FakeDownloader()),
        MatchItemWorkflow(
            repo,
            StoreCatalogClient(repo),
            FakeScorer({"prod-milk": 0.95}),
            AutoApprovalEvaluator(repo, FakeJudge()),
            DiscountService(repo.store),
        ),
        ExtractImagesWorkflow(
            repo,
            ProductImageExtractor(FakeImageGenerator(), objects),
            download=FakeDownloader(),
        ),
        StatusUpdateWorkflow(repo),
    ):
        engine.register(workflow)
    engine.attach()
    return objects


class TestPipeline:
    """A flyer upload processed through every workflow."""

    async def test_flyer_to_discounted_catalog(
        self, repo: Repository, bus: InMemoryEventBus, pipeline: FakeObjectStore
    ) -> None:
        """Items are matched, the confident one discounted, images stored."""
        await bus.publish(
            ParseEvent(data=ParsePayload(flyer_id="flyer-1", source_url="https://example.test/f.png"))
        )
        await bus.drain()

        assert bus.dead_letters == []
        flyer = await repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "completed"
        assert flyer.item_count == 2
        assert flyer.image_extraction_status == "completed"

        milk = await repo.get_item(item_id_for("flyer-1", 0))
        assert milk is not None
        assert milk.matching_status == "applied_to_product"
        assert milk.extracted_images is not None

        loaf = await repo.get_item(item_id_for("flyer-1", 1))
        assert loaf is not None
        assert loaf.matching_status == "completed"
        assert loaf.selected_candidate_id is None

        entry = await repo.get_catalog_entry("prod-milk")
        assert entry is not None
        assert entry.has_active_discount is True
        assert entry.new_price == 1.5
        assert entry.discount_provenance is not None
        assert entry.discount_provenance.source_item_id == milk.id

        assert any(path.endswith("/original.webp") for path in pipeline.objects)

    async def test_status_update_cannot_reopen_completed_flyer(
        self, repo: Repository, bus: InMemoryEventBus, pipeline: FakeObjectStore
    ) -> None:
        """A late processing report leaves a completed flyer alone."""
        await bus.publish(
            ParseEvent(data=ParsePayload(flyer_id="flyer-1", source_url="https://example.test/f.png"))
        )
        await bus.drain()

        await bus.publish(
            StatusUpdateEvent(data=StatusUpdatePayload(entity_id="flyer-1", status="processing"))
        )
        await bus.drain()

        flyer = await repo.get_flyer("flyer-1")
        assert flyer is not None
        assert flyer.processing_status == "completed"
