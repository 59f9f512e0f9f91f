"""Circuit breaker guarding classes of runtime operations.

After N consecutive failures the breaker opens and rejects calls for a
cooldown period, then lets trial calls through (half-open) to check whether
the underlying operation has recovered.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

from secure_assessment.exceptions import circuit_open_error, is_fail_fast

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Three-state circuit breaker.

    Closed: calls pass; consecutive failures are counted and a success
    resets the count. Reaching ``failure_threshold`` opens the breaker.
    Open: calls are rejected with a CIRCUIT_OPEN error until
    ``cooldown_seconds`` have passed since the last failure; the next call
    then moves the breaker to half-open.
    Half-open: one trial call at a time. ``success_threshold`` consecutive
    trial successes close the breaker and reset the failure count; any trial
    failure reopens it immediately.

    Fail-fast errors (configuration, validation, security) describe the
    request rather than the runtime and are not counted.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60,
        success_threshold: int = 1,
        time_func: Callable[[], float] | None = None,
        name: str = "operation",
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            cooldown_seconds: Seconds after the last failure before a trial call
            success_threshold: Consecutive half-open successes needed to close
            time_func: Callable returning current time in seconds (default: time.monotonic).
                       Inject a mock clock for deterministic testing.
            name: Operation class this breaker guards, used in errors and logs
        """
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("thresholds must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.success_threshold = success_threshold
        self.name = name
        self._time_func = time_func or time.monotonic
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self._state = CircuitState.CLOSED
        self._half_open_successes = 0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def _retry_after(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        elapsed = self._time_func() - self.last_failure_time
        return max(0.0, self.cooldown_seconds - elapsed)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._half_open_successes = 0
        logger.warning(
            "Circuit breaker for %s opened after %d failures. Will retry after %ss cooldown.",
            self.name,
            self.failure_count,
            self.cooldown_seconds,
        )

    def can_attempt(self) -> bool:
        """Check whether a call may proceed, moving open to half-open once cooled down."""
        if self._state is CircuitState.OPEN:
            if self._retry_after() > 0:
                return False
            self._state = CircuitState.HALF_OPEN
            self._half_open_successes = 0
            logger.info("Circuit breaker for %s half-open, allowing trial call", self.name)
        if self._state is CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return True

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state is CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes < self.success_threshold:
                return
            logger.info("Circuit breaker for %s closed", self.name)
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self._half_open_successes = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        self.failure_count += 1
        self.last_failure_time = self._time_func()
        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif self._state is CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self._half_open_successes = 0
        self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]], label: str | None = None) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            AssessmentError: CIRCUIT_OPEN when the call is rejected
        """
        if not self.can_attempt():
            raise circuit_open_error(label or self.name, self._retry_after())

        trial = self._state is CircuitState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        try:
            result = await operation()
        except Exception as e:
            if not is_fail_fast(e):
                self.record_failure()
            raise
        else:
            self.record_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False


class CircuitBreakerRegistry:
    """Named breakers, created on first use with shared parameters."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60,
        success_threshold: int = 1,
        time_func: Callable[[], float] | None = None,
    ):
        self._params = {
            "failure_threshold": failure_threshold,
            "cooldown_seconds": cooldown_seconds,
            "success_threshold": success_threshold,
            "time_func": time_func,
        }
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, **self._params)
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, CircuitState]:
        return {name: breaker.state for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
