"""EventDispatchWorkflow: one Temporal workflow per published event.

Workflow ID = ``evt-{event id}``, so publishing the same event twice starts
one dispatch. The pipeline's own step memoization lives in the document
store; Temporal supplies durable delivery and activity retries.
"""

from __future__ import annotations

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from flyer_pipeline.activities.dispatch import DispatchActivities
    from flyer_pipeline.models.contracts import EventEnvelope

_DISPATCH_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=2),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(minutes=1),
    maximum_attempts=3,
)

# Longer than MAX_RUN_DEADLINE_SECONDS, which WorkflowEngine.register enforces,
# so the engine's watchdog fires first.
DISPATCH_TIMEOUT = timedelta(minutes=20)


def dispatch_workflow_id(event_id: str) -> str:
    return f"evt-{event_id}"


@workflow.defn
class EventDispatchWorkflow:
    @workflow.run
    async def run(self, envelope: EventEnvelope) -> list[str]:
        return await workflow.execute_activity_method(
            DispatchActivities.dispatch_event,
            envelope,
            start_to_close_timeout=DISPATCH_TIMEOUT,
            retry_policy=_DISPATCH_RETRY,
        )
