"""Periodic sweep for runs left "running" past their deadline.

The in-process watchdog covers runs whose process stays alive. A worker
that crashes mid-run leaves the run (and its flyer or item) marked
running; the reaper fails those once the deadline plus a grace period has
passed, which leaves a live run time to close itself out first.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from flyer_pipeline.config import settings
from flyer_pipeline.engine.executor import WorkflowEngine
from flyer_pipeline.models.entities import utcnow

logger = structlog.get_logger()


class RunReaper:
    def __init__(
        self,
        engine: WorkflowEngine,
        poll_interval: float | None = None,
        grace: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._poll_interval = poll_interval or settings.watchdog_poll_interval_seconds
        self._grace = settings.reaper_grace_seconds if grace is None else grace
        self._clock = clock

    async def sweep(self) -> list[str]:
        """Fail every overdue run. Returns the ids of the runs it failed."""
        now = self._clock()
        reaped: list[str] = []
        for run in await self._engine.repo.list_runs("running"):
            if run.started_at is None:
                continue
            deadline = run.deadline_seconds or settings.run_deadline_seconds
            if run.started_at + timedelta(seconds=deadline + self._grace) > now:
                continue
            logger.warning("run_reaped", run_id=run.id, workflow=run.workflow_name)
            try:
                await self._engine.fail_stale_run(
                    run, f"Workflow '{run.workflow_name}' exceeded its {deadline:g}s deadline"
                )
            except Exception:
                logger.exception("run_reap_failed", run_id=run.id)
                continue
            reaped.append(run.id)
        return reaped

    async def run_forever(self) -> None:
        logger.info("reaper_started", poll_interval_s=self._poll_interval)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("reaper_sweep_failed")
            await asyncio.sleep(self._poll_interval)
