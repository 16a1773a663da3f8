"""Shared fixtures: in-memory store, repository, bus and engine."""

from __future__ import annotations

import pytest

from flyer_pipeline.engine.bus import InMemoryEventBus
from flyer_pipeline.engine.executor import WorkflowEngine
from flyer_pipeline.store.memory import InMemoryDocumentStore
from flyer_pipeline.store.repository import Repository
from tests.fakes import FAST_RETRY, no_sleep


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def repo(store: InMemoryDocumentStore) -> Repository:
    return Repository(store)


@pytest.fixture()
def bus() -> InMemoryEventBus:
    return InMemoryEventBus(max_deliveries=3, redelivery_delay=0.0)


@pytest.fixture()
def engine(repo: Repository, bus: InMemoryEventBus) -> WorkflowEngine:
    return WorkflowEngine(repo, bus, default_policy=FAST_RETRY, sleep=no_sleep)
