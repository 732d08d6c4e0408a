"""
Retry and circuit-breaker policies for source adapters
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Set, TypeVar

from .exceptions import SourceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(Enum):
    """Retry policies for failed source calls."""

    NONE = "none"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    EXPONENTIAL_JITTER = "exponential_jitter"


@dataclass
class RetryConfig:
    """
    Configuration for source retry behavior.

    Attributes:
        policy: Retry policy to use
        max_attempts: Total attempts including the first call
        base_delay_seconds: Base delay between retries
        max_delay_seconds: Maximum delay between retries
        retry_on_exceptions: Exception types to retry on (None = all)
    """

    policy: RetryPolicy = RetryPolicy.EXPONENTIAL_JITTER
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    retry_on_exceptions: Optional[Set[type]] = None

    def get_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Calculate delay after the given (1-based) failed attempt."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        ceiling = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        if self.policy == RetryPolicy.EXPONENTIAL_JITTER:
            return (rng or random).uniform(0.0, ceiling)
        return ceiling

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if the call should be retried for given exception."""
        if self.policy == RetryPolicy.NONE:
            return False
        if attempt >= self.max_attempts:
            return False
        if self.retry_on_exceptions is None:
            return True
        return any(isinstance(exception, exc_type) for exc_type in self.retry_on_exceptions)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-source circuit breaker

    Opens after ``failure_threshold`` consecutive failures. Once
    ``reset_timeout_seconds`` have elapsed a single trial call is let
    through (half-open); success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        source_id: str,
        failure_threshold: int = 3,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.source_id = source_id
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout_seconds
        ):
            self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            return self._current_state() != CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit for source '{self.source_id}' closed")
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None

    def record_failure(self):
        with self._lock:
            self._consecutive_failures += 1
            state = self._current_state()
            if state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
                if state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit for source '{self.source_id}' opened after "
                        f"{self._consecutive_failures} consecutive failures"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


def call_with_retry(
    func: Callable[[], T],
    source_id: str,
    retry_config: RetryConfig,
    breaker: Optional[CircuitBreaker] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None
) -> T:
    """
    Call a source with retries and circuit breaking

    Raises:
        SourceUnavailableError: When the circuit is open or every attempt failed
    """
    attempt = 0
    while True:
        if breaker is not None and not breaker.allow_request():
            raise SourceUnavailableError(source_id, "circuit open")

        attempt += 1
        try:
            result = func()
        except Exception as e:
            if breaker is not None:
                breaker.record_failure()
            if not retry_config.should_retry(e, attempt):
                raise SourceUnavailableError(source_id, f"{type(e).__name__}: {e}") from e

            delay = retry_config.get_delay(attempt, rng)
            logger.warning(
                f"Source '{source_id}' attempt {attempt}/{retry_config.max_attempts} failed: "
                f"{e}; retrying in {delay:.2f}s"
            )
            sleep(delay)
            continue

        if breaker is not None:
            breaker.record_success()
        return result
