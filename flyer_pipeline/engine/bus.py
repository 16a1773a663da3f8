"""Event bus: named events, at-least-once delivery to subscribed handlers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from flyer_pipeline.config import settings
from flyer_pipeline.engine.retry import RetryPolicy
from flyer_pipeline.errors import classify_error
from flyer_pipeline.models.contracts import EventEnvelope

logger = structlog.get_logger()

Handler = Callable[[EventEnvelope], Awaitable[Any]]


def to_envelope(event: EventEnvelope | BaseModel) -> EventEnvelope:
    if isinstance(event, EventEnvelope):
        return event
    return EventEnvelope.wrap(event)


class EventBus(Protocol):
    async def publish(self, event: EventEnvelope | BaseModel) -> str:
        """Enqueue an event and return its id once the bus has accepted it."""


@runtime_checkable
class SubscribableBus(EventBus, Protocol):
    """A bus that delivers to in-process handlers. Temporal routes events itself."""

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Deliver every event named ``event_name`` to ``handler``."""


async def publish_with_retry(
    bus: EventBus,
    event: EventEnvelope | BaseModel,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Publish, retrying retryable failures with backoff. Raises the last error."""
    envelope = to_envelope(event)
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await bus.publish(envelope)
        except Exception as exc:
            error = classify_error(exc)
            logger.warning(
                "event_publish_failed",
                event_name=envelope.name,
                event_id=envelope.id,
                attempt=attempt,
                error=error.message,
            )
            if not error.retryable or attempt >= policy.max_attempts:
                raise error from exc
            await sleep(policy.delay_for(attempt - 1))
    raise AssertionError("unreachable")


class InMemoryEventBus:
    """Asyncio bus for a single process.

    Each (event, handler) pair is delivered on its own task. A handler that
    raises gets the same event again, up to ``max_deliveries`` times; after
    that the event is kept in ``dead_letters``.
    """

    def __init__(
        self,
        max_deliveries: int | None = None,
        redelivery_delay: float = 0.5,
    ) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()
        self._max_deliveries = max_deliveries or settings.bus_max_deliveries
        self._redelivery_delay = redelivery_delay
        self.published: list[EventEnvelope] = []
        self.dead_letters: list[EventEnvelope] = []

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._handlers[event_name].append(handler)

    async def publish(self, event: EventEnvelope | BaseModel) -> str:
        envelope = to_envelope(event)
        self.published.append(envelope)
        handlers = self._handlers.get(envelope.name, [])
        if not handlers:
            logger.warning("event_unrouted", event_name=envelope.name, event_id=envelope.id)
        for handler in handlers:
            task = asyncio.create_task(self._deliver(handler, envelope))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.debug("event_published", event_name=envelope.name, event_id=envelope.id)
        return envelope.id

    async def _deliver(self, handler: Handler, envelope: EventEnvelope) -> None:
        for delivery in range(1, self._max_deliveries + 1):
            try:
                await handler(envelope)
                return
            except Exception as exc:
                logger.warning(
                    "event_delivery_failed",
                    event_name=envelope.name,
                    event_id=envelope.id,
                    delivery=delivery,
                    error=f"{type(exc).__name__}: {exc}"[:300],
                )
                if delivery < self._max_deliveries:
                    await asyncio.sleep(self._redelivery_delay * (2 ** (delivery - 1)))
        logger.error("event_dead_lettered", event_name=envelope.name, event_id=envelope.id)
        self.dead_letters.append(envelope)

    async def drain(self) -> None:
        """Wait until every delivery, including ones published meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
