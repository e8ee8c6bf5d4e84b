# src/llmfleet/resilience/retry.py
"""
Bounded retry with exponential backoff and error classification.

Every remote unit of work in LLMFleet runs through `RetryExecutor.execute()`.
A failure is classified into one of three branches:

- CONFIGURATION: re-raised immediately, never retried.
- CONTENT_REJECTED: if a sanitizer is available and enabled, the input is
  rewritten once by the sanitizer and the unit of work is retried with
  sanitization disabled. Otherwise the rejection is terminal.
- TRANSIENT: retried while `attempt < max_retries`, sleeping
  `base_delay_ms * 2**attempt` before each retry; then wrapped in
  `RetriesExhaustedError`.

Cancellation (`asyncio.CancelledError`) is a BaseException and is never
caught here, including while sleeping between attempts.

Usage:
    executor = RetryExecutor(RetryPolicy(max_retries=3, base_delay_ms=1000))
    result = await executor.execute(do_call, "user input", sanitizer=clean_prompt)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from ..exceptions import ConfigError, ContentRejectedError, RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sanitizer = Callable[[str], Awaitable[str]]

CONTENT_REJECTED_MARKERS = (
    "content_policy_violation",
    "safety system",
    "content_filter",
    "responsibleaipolicyviolation",
    "content management policy",
)


class ErrorClass(str, Enum):
    """Retry-relevant classification of a failure."""

    CONFIGURATION = "configuration"
    CONTENT_REJECTED = "content_rejected"
    TRANSIENT = "transient"


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify an error for the retry policy.

    Configuration errors win over everything else. Content rejection is
    recognised either by type or by a case-insensitive match of the error
    text against a small fixed vocabulary. Anything else is transient.
    """
    if isinstance(error, ConfigError):
        return ErrorClass.CONFIGURATION
    if isinstance(error, ContentRejectedError):
        return ErrorClass.CONTENT_REJECTED
    message = str(error).lower()
    if any(marker in message for marker in CONTENT_REJECTED_MARKERS):
        return ErrorClass.CONTENT_REJECTED
    return ErrorClass.TRANSIENT


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits. `max_retries` counts retries, so at most `max_retries + 1` attempts run."""

    max_retries: int = 3
    base_delay_ms: int = 10000

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms cannot be negative")

    def delay_ms(self, attempt: int) -> int:
        """Backoff before retrying after a failure on `attempt` (0-indexed)."""
        return self.base_delay_ms * (2 ** attempt)


@dataclass
class RetryContext:
    """State of one retry decision, scoped to a single exchange."""

    attempt: int
    delay_ms: int
    classification: ErrorClass
    error: Optional[BaseException] = None


def _last_status_of(error: BaseException) -> Optional[str]:
    status = getattr(error, "status", None) or getattr(error, "last_status", None)
    if status is None:
        return None
    return getattr(status, "value", str(status))


class RetryExecutor:
    """
    Runs a unit of work under a `RetryPolicy`.

    The unit of work receives the (possibly sanitized) input text, so the
    content-rejected branch can substitute a cleaned input without the caller
    rebuilding its closure.

    Args:
        policy: Default policy for `execute()` calls that do not pass one.
        sleep: Async sleep function taking seconds. Injectable for tests.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        unit_of_work: Callable[[str], Awaitable[T]],
        payload: str = "",
        *,
        policy: Optional[RetryPolicy] = None,
        sanitizer: Optional[Sanitizer] = None,
        sanitize: bool = True,
        agent_id: Optional[str] = None,
        model: Optional[str] = None,
        on_retry: Optional[Callable[[RetryContext], None]] = None,
    ) -> T:
        """
        Execute `unit_of_work(payload)` with retries.

        Args:
            unit_of_work: Coroutine function doing one attempt.
            payload: Input text handed to each attempt.
            policy: Overrides the executor's default policy.
            sanitizer: Rewrites rejected input. None disables the sanitize branch.
            sanitize: Whether the sanitize branch may run at all.
            agent_id: Included in terminal errors for diagnosis.
            model: Included in terminal errors for diagnosis.
            on_retry: Called with a `RetryContext` before each backoff sleep.

        Returns:
            Whatever the successful attempt returned.

        Raises:
            ConfigError: Immediately, on configuration failures.
            ContentRejectedError: When content is rejected and sanitization is
                disabled, unavailable, failed, or already used.
            RetriesExhaustedError: When transient failures outlast the policy.
        """
        active_policy = policy or self.policy
        sanitize_enabled = sanitize and sanitizer is not None
        current_input = payload
        attempt = 0

        while True:
            try:
                return await unit_of_work(current_input)
            except Exception as e:
                classification = classify_error(e)

                if classification is ErrorClass.CONFIGURATION:
                    logger.error(f"Configuration error (not retried) for agent={agent_id} model={model}: {e}")
                    raise

                if classification is ErrorClass.CONTENT_REJECTED:
                    if not sanitize_enabled:
                        logger.error(f"Content rejected and no sanitization available for agent={agent_id} model={model}")
                        if isinstance(e, ContentRejectedError):
                            raise
                        raise ContentRejectedError(getattr(e, "provider_name", "Unknown"), str(e)) from e
                    if attempt >= active_policy.max_retries:
                        raise ContentRejectedError(
                            getattr(e, "provider_name", "Unknown"),
                            f"Content rejected and no retries left for sanitization: {e}",
                        ) from e
                    logger.warning("Content policy violation detected, attempting sanitization")
                    try:
                        current_input = await sanitizer(current_input)  # type: ignore[misc]
                    except (ConfigError, ContentRejectedError):
                        raise
                    except Exception as sanitize_error:
                        raise ContentRejectedError(
                            getattr(e, "provider_name", "Unknown"),
                            f"Sanitization failed: {sanitize_error}",
                        ) from sanitize_error
                    sanitize_enabled = False
                    attempt += 1
                    logger.info("Sanitized input, retrying")
                    continue

                if attempt >= active_policy.max_retries:
                    logger.error(
                        f"Max retries reached (attempts={attempt + 1}) for agent={agent_id} model={model}: {e}"
                    )
                    raise RetriesExhaustedError(
                        attempts=attempt + 1,
                        last_error=e,
                        agent_id=agent_id,
                        model=model,
                        last_status=_last_status_of(e),
                    ) from e

                delay_ms = active_policy.delay_ms(attempt)
                context = RetryContext(attempt=attempt, delay_ms=delay_ms, classification=classification, error=e)
                logger.warning(f"Request failed (attempt {attempt + 1}), retrying in {delay_ms}ms: {e}")
                if on_retry is not None:
                    on_retry(context)
                await self._sleep(delay_ms / 1000.0)
                attempt += 1
