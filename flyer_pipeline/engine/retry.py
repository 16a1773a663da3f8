"""Retry policy and bounded external calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

from flyer_pipeline.config import settings
from flyer_pipeline.errors import TransientError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2**attempt``, capped at ``max_delay``.

    ``attempt`` is zero-based, so the wait after the first failure is
    ``base_delay``. ``max_attempts`` counts the first try.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    @classmethod
    def from_settings(cls, max_attempts: int | None = None) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts or settings.step_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )


NO_RETRY = RetryPolicy(max_attempts=1)


async def call_with_timeout(awaitable: Awaitable[T], seconds: float, *, operation: str) -> T:
    """Await ``awaitable`` for at most ``seconds``.

    On expiry the awaited task is cancelled (an in-flight httpx request is
    aborted, a ``to_thread`` call is abandoned) and TransientError is raised.
    """
    try:
        async with asyncio.timeout(seconds):
            return await awaitable
    except TimeoutError as exc:
        raise TransientError(f"{operation} timed out after {seconds:g}s") from exc
