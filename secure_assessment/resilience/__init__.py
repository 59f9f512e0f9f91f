"""Resilience primitives: bounded retry and circuit breaking.

Generic building blocks with no knowledge of containers or workflows.
"""

from secure_assessment.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from secure_assessment.resilience.retry import (
    DEFAULT_RETRY_POLICIES,
    RetryPolicy,
    RetryResult,
    compute_delay,
    get_retry_policy,
    with_retry,
    zero_delay,
)

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Retry
    "DEFAULT_RETRY_POLICIES",
    "RetryPolicy",
    "RetryResult",
    "compute_delay",
    "get_retry_policy",
    "with_retry",
    "zero_delay",
]
