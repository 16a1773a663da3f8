"""Temporal activity that hands one event to the workflow engine.

Registered as an instance method so the worker can bind its engine. A
raised exception makes Temporal retry the activity, which is how a failed
delivery gets redelivered.
"""

from __future__ import annotations

import structlog
from temporalio import activity

from flyer_pipeline.engine.executor import WorkflowEngine
from flyer_pipeline.models.contracts import EventEnvelope

logger = structlog.get_logger()


class DispatchActivities:
    def __init__(self, engine: WorkflowEngine) -> None:
        self._engine = engine

    @activity.defn(name="dispatch_event")
    async def dispatch_event(self, envelope: EventEnvelope) -> list[str]:
        info = activity.info()
        logger.info(
            "dispatch_event_start",
            event_name=envelope.name,
            event_id=envelope.id,
            attempt=info.attempt,
        )
        runs = await self._engine.dispatch(envelope)
        return [f"{run.id}={run.status}" for run in runs]
