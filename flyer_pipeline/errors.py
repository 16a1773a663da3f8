"""Error taxonomy for pipeline steps.

Every failure a step can produce ends up as one of these classes. The
executor only looks at ``retryable``: retryable errors are retried with
backoff until the step's attempt budget is spent, everything else fails the
step at once.

- ValidationError: malformed event payload or AI output. Never retried.
- TransientError: network, timeout, quota. Retried.
- SafetyRejection: the model refused on content-policy grounds. Never
  retried, kept distinct so callers can tell it apart from bad output.
- TransactionConflict: a discount lost the monotonic-improvement check.
  Callers treat it as a successful no-op.
"""

from __future__ import annotations

import json

import anthropic
import httpx
import pydantic
from google.genai import errors as genai_errors


class PipelineError(Exception):
    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ValidationError(PipelineError):
    """Malformed payload or model output. ``raw`` keeps the offending text."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class TransientError(PipelineError):
    retryable = True


class SafetyRejection(PipelineError):
    pass


class TransactionConflict(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class WatchdogExpired(PipelineError):
    pass


class StepFailed(PipelineError):
    """A step gave up, either on a terminal error or after its last attempt."""

    def __init__(self, step_name: str, attempts: int, cause: PipelineError) -> None:
        super().__init__(f"Step '{step_name}' failed after {attempts} attempt(s): {cause.message}")
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause


def _is_rate_limit(message: str, type_name: str) -> bool:
    return (
        "429" in message
        or "RESOURCE_EXHAUSTED" in message
        or "ResourceExhausted" in type_name
        or "quota" in message.lower()
    )


def _is_safety_block(message: str) -> bool:
    return "SAFETY" in message or "blocked" in message.lower()


def classify_error(exc: BaseException) -> PipelineError:
    """Map any exception raised inside a step onto the taxonomy."""
    if isinstance(exc, PipelineError):
        return exc

    message = str(exc)
    type_name = type(exc).__name__

    if isinstance(exc, TimeoutError | httpx.TimeoutException):
        return TransientError(f"Timed out: {message or type_name}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return TransientError(f"HTTP {status} from {exc.request.url}")
        return PipelineError(f"HTTP {status} from {exc.request.url}", retryable=False)
    if isinstance(exc, httpx.TransportError | ConnectionError):
        return TransientError(f"Network error: {type_name}: {message[:200]}")

    if isinstance(exc, pydantic.ValidationError | json.JSONDecodeError):
        return ValidationError(f"Invalid data: {message[:300]}")

    if isinstance(
        exc,
        anthropic.RateLimitError | anthropic.APIConnectionError | anthropic.InternalServerError,
    ):
        return TransientError(f"Claude unavailable: {type_name}: {message[:200]}")
    if isinstance(exc, anthropic.APIStatusError):
        return PipelineError(f"Claude rejected request: {message[:200]}", retryable=False)

    if isinstance(exc, genai_errors.APIError):
        code = exc.code or 0
        if code == 429 or code >= 500:
            return TransientError(f"Gemini unavailable ({code}): {message[:200]}")
        if _is_safety_block(message):
            return SafetyRejection(f"Content policy violation: {message[:200]}")
        return PipelineError(f"Gemini rejected request ({code}): {message[:200]}", retryable=False)

    if _is_rate_limit(message, type_name):
        return TransientError(f"Rate limited: {message[:200]}")
    if _is_safety_block(message):
        return SafetyRejection(f"Content policy violation: {message[:200]}")

    # Unknown failures get the bounded retry budget, then become terminal.
    return PipelineError(f"{type_name}: {message[:200]}", retryable=True)


def truncate_reason(message: str, limit: int = 500) -> str:
    """Shorten an error message for storage on an entity."""
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
