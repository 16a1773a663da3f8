"""Temporal-backed event bus.

Publishing starts an EventDispatchWorkflow whose id is derived from the
event id. Routing to pipeline workflows happens inside the worker
(``WorkflowEngine.dispatch``), so this bus only publishes: it is not a
``SubscribableBus`` and ``WorkflowEngine.attach`` rejects it.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel
from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError

from flyer_pipeline.config import settings
from flyer_pipeline.engine.bus import to_envelope
from flyer_pipeline.models.contracts import EventEnvelope
from flyer_pipeline.workflows.dispatch import EventDispatchWorkflow, dispatch_workflow_id

logger = structlog.get_logger()


class TemporalEventBus:
    def __init__(self, client: Client, task_queue: str | None = None) -> None:
        self._client = client
        self._task_queue = task_queue or settings.temporal_task_queue

    async def publish(self, event: EventEnvelope | BaseModel) -> str:
        envelope = to_envelope(event)
        try:
            await self._client.start_workflow(
                EventDispatchWorkflow.run,
                envelope,
                id=dispatch_workflow_id(envelope.id),
                task_queue=self._task_queue,
                id_reuse_policy=WorkflowIDReusePolicy.REJECT_DUPLICATE,
            )
        except WorkflowAlreadyStartedError:
            logger.info("event_already_dispatched", event_name=envelope.name, event_id=envelope.id)
            return envelope.id
        logger.info("event_published", event_name=envelope.name, event_id=envelope.id)
        return envelope.id

    async def close(self) -> None:
        return None
