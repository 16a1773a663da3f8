"""Wiring: document store, bus, AI collaborators and the workflow engine.

The API and the worker both build their object graph here. With
``use_temporal`` the bus starts Temporal dispatch workflows; otherwise the
API process hosts the in-memory bus and runs workflows itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from temporalio.client import Client

from flyer_pipeline.activities.auto_approval import AutoApprovalEvaluator, ClaudeRuleJudge
from flyer_pipeline.activities.discount import ClaudeDiscountInterpreter, DiscountService
from flyer_pipeline.activities.extract_offers import GeminiOfferExtractor
from flyer_pipeline.activities.product_images import GeminiImageGenerator, ProductImageExtractor
from flyer_pipeline.activities.score_matches import ClaudeMatchScorer
from flyer_pipeline.catalog import StoreCatalogClient
from flyer_pipeline.config import settings
from flyer_pipeline.engine.bus import EventBus, InMemoryEventBus
from flyer_pipeline.engine.executor import Workflow, WorkflowEngine
from flyer_pipeline.engine.temporal import TemporalEventBus
from flyer_pipeline.store.base import DocumentStore
from flyer_pipeline.store.memory import InMemoryDocumentStore
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.store.sql import SqlDocumentStore
from flyer_pipeline.utils.r2 import R2ObjectStore
from flyer_pipeline.workflows.extract_images import ExtractImagesWorkflow
from flyer_pipeline.workflows.match_item import MatchItemWorkflow
from flyer_pipeline.workflows.parse_flyer import ParseFlyerWorkflow
from flyer_pipeline.workflows.status_update import StatusUpdateWorkflow

logger = structlog.get_logger()


@dataclass
class Services:
    store: DocumentStore
    repo: Repository
    bus: Any
    engine: WorkflowEngine
    discounts: DiscountService

    async def close(self) -> None:
        await self.bus.close()
        await self.store.close()


def build_store() -> DocumentStore:
    if settings.use_sql_store:
        return SqlDocumentStore()
    if settings.use_temporal:
        logger.warning(
            "in_memory_store_with_temporal",
            hint="API and worker will not share state; set USE_SQL_STORE=true",
        )
    return InMemoryDocumentStore()


def build_workflows(repo: Repository, discounts: DiscountService) -> list[Workflow]:
    evaluator = AutoApprovalEvaluator(repo, ClaudeRuleJudge())
    return [
        ParseFlyerWorkflow(repo, GeminiOfferExtractor()),
        MatchItemWorkflow(
            repo,
            StoreCatalogClient(repo),
            ClaudeMatchScorer(),
            evaluator,
            discounts,
        ),
        ExtractImagesWorkflow(repo, ProductImageExtractor(GeminiImageGenerator(), R2ObjectStore())),
        StatusUpdateWorkflow(repo),
    ]


def build_engine(repo: Repository, bus: EventBus, workflows: list[Workflow]) -> WorkflowEngine:
    engine = WorkflowEngine(repo, bus)
    for workflow in workflows:
        engine.register(workflow)
    return engine


def build_services(
    temporal_client: Client | None = None,
    store: DocumentStore | None = None,
) -> Services:
    """Build the object graph. With a Temporal client, events go through Temporal."""
    store = store or build_store()
    repo = Repository(store)
    discounts = DiscountService(store, ClaudeDiscountInterpreter())

    bus: InMemoryEventBus | TemporalEventBus
    if temporal_client is not None:
        bus = TemporalEventBus(temporal_client)
    else:
        bus = InMemoryEventBus()

    engine = build_engine(repo, bus, build_workflows(repo, discounts))
    if isinstance(bus, InMemoryEventBus):
        engine.attach()
    logger.info(
        "services_built",
        store=type(store).__name__,
        bus=type(bus).__name__,
        workflows=sorted(engine.workflows),
    )
    return Services(store=store, repo=repo, bus=bus, engine=engine, discounts=discounts)
