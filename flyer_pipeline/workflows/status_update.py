"""Status-update workflow: apply an externally reported flyer status."""

from __future__ import annotations

from typing import Any

import structlog

from flyer_pipeline.engine.executor import WorkflowContext
from flyer_pipeline.errors import truncate_reason
from flyer_pipeline.models.contracts import STATUS_UPDATE_EVENT, StatusUpdateEvent
from flyer_pipeline.store.repository import Repository

logger = structlog.get_logger()


class StatusUpdateWorkflow:
    name = "status-update"
    event_name = STATUS_UPDATE_EVENT
    event_model = StatusUpdateEvent
    deadline_seconds: float | None = None

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    async def run(self, ctx: WorkflowContext) -> dict[str, Any]:
        data = ctx.event.data
        fields: dict[str, Any] = {}
        if data.error:
            fields["failure_reason"] = truncate_reason(data.error)
        applied = await ctx.step.run(
            "apply-status",
            lambda: self._repo.transition_flyer_status(data.entity_id, data.status, **fields),
        )
        logger.info("flyer_status_reported", flyer_id=data.entity_id, status=data.status, applied=applied)
        return {"applied": applied}

    async def on_failure(self, event: StatusUpdateEvent, reason: str) -> None:
        # Nothing to roll back: the only write is the status itself.
        return None
