"""Bounded retry with exponential backoff and jitter.

``with_retry`` wraps any awaitable-returning callable and reports a
structured ``RetryResult`` instead of raising, so callers can log attempts
and durations before deciding what to do with the failure.
"""

import asyncio
import dataclasses
import inspect
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from secure_assessment.exceptions import (
    AssessmentError,
    is_fail_fast,
    is_recoverable,
    is_security_violation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCondition = Callable[[BaseException], bool]
RetryHook = Callable[[BaseException, int], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry one class of operation.

    Delays are in seconds. ``retry_condition`` of None means every
    non-fail-fast error is retried.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.0
    retry_condition: RetryCondition | None = None
    on_retry: RetryHook | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be non-negative")

    def replace(self, **changes: Any) -> "RetryPolicy":
        return dataclasses.replace(self, **changes)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation."""

    success: bool
    result: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_duration_ms: float = 0.0

    def unwrap(self) -> T:
        """Return the result or raise the final error."""
        if self.success:
            return self.result  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError(f"Operation failed after {self.attempts} attempts")
        raise self.error


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before the retry that follows ``attempt`` (1-based)."""
    delay = min(policy.base_delay * policy.backoff_multiplier ** (attempt - 1), policy.max_delay)
    if policy.jitter:
        delay += random.uniform(0, policy.jitter)  # nosec B311
    return delay


def _should_retry(error: BaseException, policy: RetryPolicy) -> bool:
    if is_fail_fast(error):
        return False
    if policy.retry_condition is None:
        return True
    try:
        return bool(policy.retry_condition(error))
    except Exception as e:
        logger.warning("Retry condition raised, not retrying: %s", e)
        return False


async def _notify_retry(policy: RetryPolicy, error: BaseException, attempt: int, label: str) -> None:
    if policy.on_retry is None:
        return
    try:
        outcome = policy.on_retry(error, attempt)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning("Retry hook for %s raised: %s", label, e)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "operation",
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """Run ``operation`` up to ``policy.max_attempts`` times.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry policy
        label: Name used in log messages
        sleep: Awaitable sleep, injectable for tests

    Returns:
        RetryResult with the value or the last error, attempts and duration
    """
    started = time.monotonic()
    last_error: BaseException | None = None
    attempts = 0

    for attempt in range(1, policy.max_attempts + 1):
        attempts = attempt
        try:
            logger.debug("Executing %s, attempt %d/%d", label, attempt, policy.max_attempts)
            result = await operation()
        except Exception as e:
            last_error = e
            if not _should_retry(e, policy):
                logger.info("%s failed with non-retryable error: %s", label, e)
                break
            if attempt >= policy.max_attempts:
                break
            delay = compute_delay(policy, attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                label,
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            await _notify_retry(policy, e, attempt, label)
            await sleep(delay)
        else:
            duration_ms = (time.monotonic() - started) * 1000
            if attempt > 1:
                logger.info("%s succeeded on attempt %d", label, attempt)
            return RetryResult(
                success=True,
                result=result,
                attempts=attempt,
                total_duration_ms=duration_ms,
            )

    duration_ms = (time.monotonic() - started) * 1000
    logger.error("%s failed after %d attempt(s): %s", label, attempts, last_error)
    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempts,
        total_duration_ms=duration_ms,
    )


# =============================================================================
# DEFAULT POLICIES
# =============================================================================


def _matches_any(patterns: list[re.Pattern[str]], error: BaseException) -> bool:
    text = str(error)
    return any(pattern.search(text) for pattern in patterns)


_TRANSIENT_RUNTIME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"network.*not.*found",
        r"image.*not.*found",
        r"temporary.*failure",
        r"connection.*refused",
        r"timeout",
        r"timed out",
    )
]

_RESOURCE_CONTENTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"resource.*temporarily.*unavailable", r"device.*busy", r"try.*again")
]

_ANALYSIS_TRANSIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (r"tool.*not.*ready", r"temporary.*lock", r"resource.*busy")
]


def _retry_container_creation(error: BaseException) -> bool:
    # Typed runtime failures carry their own recoverability; foreign
    # exceptions must look transient.
    if isinstance(error, AssessmentError):
        return error.recoverable
    return is_recoverable(error) and _matches_any(_TRANSIENT_RUNTIME_PATTERNS, error)


def _retry_resource_allocation(error: BaseException) -> bool:
    return (
        _matches_any(_RESOURCE_CONTENTION_PATTERNS, error)
        and "exceeded" not in str(error)
        and is_recoverable(error)
    )


def _retry_network_operation(error: BaseException) -> bool:
    return not is_security_violation(error) and is_recoverable(error)


def _retry_analysis_execution(error: BaseException) -> bool:
    return _matches_any(_ANALYSIS_TRANSIENT_PATTERNS, error) and is_recoverable(error)


DEFAULT_RETRY_POLICIES: dict[str, RetryPolicy] = {
    "container_creation": RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        jitter=0.5,
        retry_condition=_retry_container_creation,
    ),
    "resource_allocation": RetryPolicy(
        max_attempts=5,
        base_delay=0.5,
        max_delay=5.0,
        backoff_multiplier=1.5,
        jitter=0.2,
        retry_condition=_retry_resource_allocation,
    ),
    "network_operation": RetryPolicy(
        max_attempts=4,
        base_delay=2.0,
        max_delay=15.0,
        backoff_multiplier=2.0,
        jitter=1.0,
        retry_condition=_retry_network_operation,
    ),
    "codebase_mount": RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=5.0,
        backoff_multiplier=2.0,
        jitter=0.25,
        retry_condition=_retry_network_operation,
    ),
    "container_removal": RetryPolicy(
        max_attempts=3,
        base_delay=0.5,
        max_delay=4.0,
        backoff_multiplier=2.0,
        jitter=0.1,
        retry_condition=_retry_network_operation,
    ),
    "analysis_execution": RetryPolicy(
        max_attempts=2,
        base_delay=3.0,
        max_delay=10.0,
        backoff_multiplier=2.0,
        jitter=0.5,
        retry_condition=_retry_analysis_execution,
    ),
}


def get_retry_policy(name: str) -> RetryPolicy:
    """Get a default retry policy by operation class name.

    Raises:
        KeyError: If no policy is registered under ``name``
    """
    return DEFAULT_RETRY_POLICIES[name]


def zero_delay(policy: RetryPolicy) -> RetryPolicy:
    """Same policy without any waiting, for tests and dry runs."""
    return policy.replace(base_delay=0.0, max_delay=0.0, jitter=0.0)
