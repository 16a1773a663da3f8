"""Step executor: runs workflows as sequences of durable, memoized steps.

A workflow run is identified by ``"{workflow}:{event id}"``, so redelivery of
an event lands on the same run. Each ``ctx.step.run(name, fn)`` call first
looks for a completed StepRecord for ``(run id, name)`` and returns its stored
result instead of calling ``fn`` again. New results are persisted before the
workflow moves on.

Failures inside a step are classified (errors.classify_error): retryable
ones are retried with exponential backoff until the step's attempt budget
is spent, anything else fails the step immediately. A failed step fails the
run, and the workflow's ``on_failure`` hook moves the owning entity to its
failed status.

The whole run sits inside ``asyncio.timeout``, measured from the run's first
start: a redelivered run only gets what is left of its deadline. When the deadline
passes, the in-flight step is cancelled (which cancels whatever external
call it is awaiting) and ``on_failure`` runs, so nothing stays "processing".
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import pydantic
import structlog
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from flyer_pipeline.config import settings
from flyer_pipeline.engine.bus import EventBus, SubscribableBus, publish_with_retry, to_envelope
from flyer_pipeline.engine.retry import RetryPolicy, call_with_timeout
from flyer_pipeline.errors import (
    StepFailed,
    ValidationError,
    WatchdogExpired,
    classify_error,
    truncate_reason,
)
from flyer_pipeline.models.contracts import EventEnvelope
from flyer_pipeline.models.entities import StepRecord, WorkflowRun, utcnow
from flyer_pipeline.store.repository import Repository

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_FAILURE_HOOK_TIMEOUT = 30.0

# Stays under the 20-minute Temporal dispatch activity timeout, so the
# watchdog fires before Temporal abandons the activity.
MAX_RUN_DEADLINE_SECONDS = 18 * 60.0


class Workflow(Protocol):
    name: str
    event_name: str
    event_model: type[BaseModel]
    deadline_seconds: float | None

    async def run(self, ctx: WorkflowContext) -> Any: ...

    async def on_failure(self, event: Any, reason: str) -> None: ...


@dataclass
class FanOutResult:
    published: list[str]
    failed: list[dict[str, str]]


class StepRunner:
    """The ``ctx.step`` object handed to workflows."""

    def __init__(
        self,
        run_id: str,
        repo: Repository,
        bus: EventBus,
        default_policy: RetryPolicy,
        sleep: Sleep,
    ) -> None:
        self._run_id = run_id
        self._repo = repo
        self._bus = bus
        self._default_policy = default_policy
        self._sleep = sleep

    async def run(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> Any:
        """Execute ``fn`` once per run, returning its JSON-serialized result.

        ``timeout`` bounds each attempt; an attempt that runs out is
        cancelled and counts as a retryable failure.
        """
        policy = retry or self._default_policy
        previous = await self._repo.get_step(self._run_id, name)
        if previous is not None and previous.status == "completed":
            logger.debug("step_memoized", step=name)
            return previous.result

        attempt = previous.attempt if previous is not None else 0
        while True:
            attempt += 1
            started_at = utcnow()
            started = time.monotonic()
            try:
                if timeout is not None:
                    value = await call_with_timeout(fn(), timeout, operation=f"Step '{name}'")
                else:
                    value = await fn()
            except Exception as exc:
                error = classify_error(exc)
                await self._repo.save_step(
                    StepRecord(
                        run_id=self._run_id,
                        step_name=name,
                        status="failed",
                        attempt=attempt,
                        error=truncate_reason(error.message),
                        started_at=started_at,
                        completed_at=utcnow(),
                    )
                )
                if not error.retryable or attempt >= policy.max_attempts:
                    logger.warning(
                        "step_failed",
                        step=name,
                        attempt=attempt,
                        retryable=error.retryable,
                        error=error.message,
                    )
                    raise StepFailed(name, attempt, error) from exc
                delay = policy.delay_for(attempt - 1)
                logger.info(
                    "step_retrying", step=name, attempt=attempt, delay_s=delay, error=error.message
                )
                await self._sleep(delay)
                continue

            result = to_jsonable_python(value)
            await self._repo.save_step(
                StepRecord(
                    run_id=self._run_id,
                    step_name=name,
                    status="completed",
                    attempt=attempt,
                    result=result,
                    started_at=started_at,
                    completed_at=utcnow(),
                )
            )
            logger.info(
                "step_completed",
                step=name,
                attempt=attempt,
                duration_ms=round((time.monotonic() - started) * 1000),
            )
            return result

    async def send_events(
        self,
        name: str,
        events: Sequence[BaseModel | EventEnvelope],
        *,
        retry: RetryPolicy | None = None,
    ) -> FanOutResult:
        """Publish ``events`` as one memoized step.

        Every event is retried on its own; one event that cannot be published
        does not stop the others. Failures are returned, not raised.
        """
        policy = retry or RetryPolicy.from_settings(settings.fanout_max_attempts)
        envelopes = [to_envelope(event) for event in events]

        async def _publish_all() -> dict[str, Any]:
            outcomes = await asyncio.gather(
                *(publish_with_retry(self._bus, env, policy, self._sleep) for env in envelopes),
                return_exceptions=True,
            )
            published: list[str] = []
            failed: list[dict[str, str]] = []
            for envelope, outcome in zip(envelopes, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    failed.append({"event_id": envelope.id, "error": str(outcome)[:300]})
                else:
                    published.append(outcome)
            return {"published": published, "failed": failed}

        result = await self.run(name, _publish_all)
        return FanOutResult(published=result["published"], failed=result["failed"])


@dataclass
class WorkflowContext:
    run: WorkflowRun
    event: Any
    step: StepRunner


def run_id_for(workflow_name: str, event_id: str) -> str:
    return f"{workflow_name}:{event_id}"


class WorkflowEngine:
    def __init__(
        self,
        repo: Repository,
        bus: EventBus,
        *,
        default_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.repo = repo
        self.bus = bus
        self._default_policy = default_policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._workflows: dict[str, Workflow] = {}

    @property
    def workflows(self) -> dict[str, Workflow]:
        return dict(self._workflows)

    def register(self, workflow: Workflow) -> None:
        if workflow.name in self._workflows:
            raise ValueError(f"Workflow '{workflow.name}' already registered")
        deadline = workflow.deadline_seconds or settings.run_deadline_seconds
        if deadline > MAX_RUN_DEADLINE_SECONDS:
            raise ValueError(
                f"Workflow '{workflow.name}' deadline {deadline:g}s exceeds the "
                f"{MAX_RUN_DEADLINE_SECONDS:g}s ceiling"
            )
        self._workflows[workflow.name] = workflow

    def attach(self, bus: SubscribableBus | None = None) -> None:
        """Subscribe every registered workflow to its event on ``bus``."""
        target = bus or self.bus
        if not isinstance(target, SubscribableBus):
            raise TypeError(f"{type(target).__name__} does not deliver to in-process handlers")
        for workflow in self._workflows.values():
            target.subscribe(workflow.event_name, self._handler_for(workflow))

    def _handler_for(self, workflow: Workflow) -> Callable[[EventEnvelope], Awaitable[Any]]:
        async def _handle(envelope: EventEnvelope) -> None:
            await self.execute(workflow, envelope)

        return _handle

    async def dispatch(self, envelope: EventEnvelope) -> list[WorkflowRun]:
        """Run every workflow that consumes ``envelope.name``."""
        matching = [wf for wf in self._workflows.values() if wf.event_name == envelope.name]
        if not matching:
            logger.warning("event_unrouted", event_name=envelope.name, event_id=envelope.id)
        runs = []
        for workflow in matching:
            runs.append(await self.execute(workflow, envelope))
        return runs

    async def execute(self, workflow: Workflow, envelope: EventEnvelope) -> WorkflowRun:
        run_id = run_id_for(workflow.name, envelope.id)
        with structlog.contextvars.bound_contextvars(
            run_id=run_id, workflow=workflow.name, event_id=envelope.id
        ):
            run = await self._load_or_create_run(workflow, envelope, run_id)
            if run.status in ("completed", "failed"):
                logger.info("run_already_finished", status=run.status)
                return run

            try:
                event = workflow.event_model.model_validate(envelope.model_dump(mode="json"))
            except pydantic.ValidationError as exc:
                error = ValidationError(f"Invalid '{envelope.name}' payload: {exc}", raw=str(envelope.data))
                logger.error(
                    "event_payload_invalid",
                    payload=envelope.data,
                    error=error.message[:500],
                )
                await self.repo.finish_run(run_id, "failed", truncate_reason(error.message))
                return await self._reload(run_id)

            started_at = run.started_at or utcnow()
            await self.repo.update_run(run_id, status="running", started_at=started_at)
            run = run.model_copy(update={"status": "running", "started_at": started_at})
            ctx = WorkflowContext(
                run=run,
                event=event,
                step=StepRunner(run_id, self.repo, self.bus, self._default_policy, self._sleep),
            )

            deadline = workflow.deadline_seconds or settings.run_deadline_seconds
            # A redelivered run keeps its original start, so only the rest of the budget remains.
            remaining = deadline - (utcnow() - started_at).total_seconds()
            if remaining <= 0:
                logger.error("run_watchdog_expired", deadline_s=deadline, redelivered=True)
                await self._fail(
                    workflow, run_id, event, f"Workflow '{workflow.name}' exceeded its {deadline:g}s deadline"
                )
                return await self._reload(run_id)
            logger.info("run_started", deadline_s=deadline, remaining_s=round(remaining, 3))
            watchdog = asyncio.timeout(remaining)
            try:
                async with watchdog:
                    await workflow.run(ctx)
            except TimeoutError as exc:
                if watchdog.expired():
                    error = WatchdogExpired(
                        f"Workflow '{workflow.name}' exceeded its {deadline:g}s deadline"
                    )
                    logger.error("run_watchdog_expired", deadline_s=deadline)
                else:
                    error = classify_error(exc)
                await self._fail(workflow, run_id, event, error.message)
            except asyncio.CancelledError:
                await asyncio.shield(self._fail(workflow, run_id, event, "Run was cancelled"))
                raise
            except Exception as exc:
                error = classify_error(exc)
                await self._fail(workflow, run_id, event, error.message)
            else:
                await self.repo.finish_run(run_id, "completed")
                logger.info("run_completed")
            return await self._reload(run_id)

    async def fail_stale_run(self, run: WorkflowRun, reason: str) -> None:
        """Fail a run that outlived its deadline without the watchdog firing (e.g. crash)."""
        workflow = self._workflows.get(run.workflow_name)
        if workflow is None:
            await self.repo.finish_run(run.id, "failed", reason)
            return
        try:
            event = workflow.event_model.model_validate(run.triggering_event)
        except pydantic.ValidationError:
            event = None
        with structlog.contextvars.bound_contextvars(run_id=run.id, workflow=workflow.name):
            await self._fail(workflow, run.id, event, reason)

    async def _fail(self, workflow: Workflow, run_id: str, event: Any, reason: str) -> None:
        reason = truncate_reason(reason)
        if event is not None:
            try:
                async with asyncio.timeout(_FAILURE_HOOK_TIMEOUT):
                    await workflow.on_failure(event, reason)
            except Exception:
                # Run stays "running" so redelivery or the reaper tries again.
                logger.exception("failure_hook_failed", reason=reason)
                raise
        await self.repo.finish_run(run_id, "failed", reason)
        logger.error("run_failed", reason=reason)

    async def _load_or_create_run(
        self, workflow: Workflow, envelope: EventEnvelope, run_id: str
    ) -> WorkflowRun:
        existing = await self.repo.get_run(run_id)
        if existing is not None:
            return existing
        run = WorkflowRun(
            id=run_id,
            workflow_name=workflow.name,
            event_id=envelope.id,
            event_name=envelope.name,
            triggering_event=envelope.model_dump(mode="json"),
            deadline_seconds=workflow.deadline_seconds or settings.run_deadline_seconds,
        )
        if not await self.repo.create_run(run):
            return await self._reload(run_id)
        return run

    async def _reload(self, run_id: str) -> WorkflowRun:
        run = await self.repo.get_run(run_id)
        if run is None:
            raise RuntimeError(f"Run {run_id} disappeared")
        return run
