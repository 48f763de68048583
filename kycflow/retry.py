"""
Retry with exponential backoff and a circuit breaker for verification calls.

Verification clients return tagged outcomes instead of raising, so the
decision to retry is a check of outcome.is_transient. Only the final
verdict is turned into an exception: RetryError when the budget is spent,
CircuitOpenError when the breaker refuses the call.
"""

import random
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Optional

from .config import BreakerSettings, RetrySettings
from .errors import CircuitOpenError, RetryError
from .logger import get_logger

logger = get_logger()


def compute_backoff(
    attempt: int,
    settings: RetrySettings,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    The exponential delay is capped at max_delay, then up to `jitter` of it
    is removed at random so concurrent callers do not retry in lockstep.
    """
    delay = min(settings.max_delay, settings.base_delay * settings.multiplier ** (attempt - 1))
    if settings.jitter and delay > 0:
        rng = rng or random
        delay -= rng.uniform(0, delay * settings.jitter)
    return delay


class CircuitBreaker:
    """
    Circuit breaker pattern to prevent repeated calls to failing services.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Failure rate over the sliding window crossed the threshold;
      requests are refused without calling out
    - HALF_OPEN: open_duration elapsed; exactly one trial request is let through

    The OPEN -> HALF_OPEN transition is evaluated lazily on the next
    allow_request(); there is no background timer.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        settings: Optional[BreakerSettings] = None,
        name: str = "service",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or BreakerSettings()
        self.name = name
        self.clock = clock

        self._lock = threading.Lock()
        self._window: Deque[bool] = deque(maxlen=self.settings.sliding_window_size)
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._state = self.CLOSED

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def failure_rate(self) -> float:
        with self._lock:
            return self._failure_rate()

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if not ok) / len(self._window)

    def allow_request(self) -> bool:
        """Return True if a call may go out now."""
        with self._lock:
            if self._state == self.CLOSED:
                return True
            if self._state == self.OPEN:
                if self._time_until_reset() > 0:
                    return False
                self._transition(self.HALF_OPEN)
                self._trial_in_flight = True
                return True
            # HALF_OPEN: one trial at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._trial_in_flight = False
                self._window.clear()
                self._opened_at = None
                self._transition(self.CLOSED)
                return
            self._window.append(True)

    def record_failure(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._trial_in_flight = False
                self._open()
                return
            self._window.append(False)
            if (
                self._state == self.CLOSED
                and len(self._window) >= self.settings.effective_minimum_calls
                and self._failure_rate() >= self.settings.failure_rate_threshold
            ):
                self._open()

    def time_until_reset(self) -> float:
        """Seconds until an OPEN circuit will admit a trial call."""
        with self._lock:
            return self._time_until_reset()

    def _time_until_reset(self) -> float:
        if self._state != self.OPEN or self._opened_at is None:
            return 0.0
        elapsed = self.clock() - self._opened_at
        return max(0.0, self.settings.open_duration - elapsed)

    def _open(self):
        self._opened_at = self.clock()
        self._transition(self.OPEN)

    def _transition(self, new_state: str):
        if new_state == self._state:
            return
        logger.warning(
            f"Circuit breaker {self.name}: {self._state} -> {new_state}",
            failure_rate=round(self._failure_rate(), 3),
        )
        logger.record_breaker_transition(self.name, new_state)
        self._state = new_state

    def reset(self):
        """Manually reset the circuit breaker."""
        with self._lock:
            self._window.clear()
            self._opened_at = None
            self._trial_in_flight = False
            self._state = self.CLOSED


class ResilientVerifier:
    """
    Wraps one verification call with bounded retries and a circuit breaker.

    Holds no business logic: it returns the first non-transient outcome
    (SUCCESS or REJECTED) as-is.

    Args:
        call: Callable taking the request payload and returning an outcome
        service: Name used in logs and errors
        retry: Retry budget and backoff shape
        breaker: Circuit breaker shared by every call to this service
        sleep: Injected for tests
        rng: Random source for jitter
        on_retry: Optional callback(attempt, outcome, delay)
    """

    def __init__(
        self,
        call: Callable,
        service: str,
        retry: Optional[RetrySettings] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        on_retry: Optional[Callable] = None,
    ):
        self.call = call
        self.service = service
        self.retry = retry or RetrySettings()
        self.breaker = breaker or CircuitBreaker(name=service)
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.on_retry = on_retry

    def execute(self, payload):
        """
        Run the call until it yields a non-transient outcome.

        Raises:
            CircuitOpenError: The breaker refused an attempt
            RetryError: max_attempts transient outcomes in a row
        """
        last = None
        for attempt in range(1, self.retry.max_attempts + 1):
            if not self.breaker.allow_request():
                raise CircuitOpenError(self.service, self.breaker.time_until_reset())

            try:
                outcome = self.call(payload)
            except Exception:
                # Unmappable answer or client bug; release a half-open trial
                self.breaker.record_failure()
                raise

            logger.record_verification_call(self.service, outcome.kind)

            if not outcome.is_transient:
                self.breaker.record_success()
                if attempt > 1:
                    logger.info(f"{self.service} succeeded after retry", attempts=attempt)
                return replace(outcome, attempts=attempt)

            self.breaker.record_failure()
            last = outcome

            # Don't sleep after the last attempt
            if attempt < self.retry.max_attempts:
                delay = compute_backoff(attempt, self.retry, self.rng)
                logger.info(
                    f"{self.service} transient failure, retrying",
                    attempt=attempt,
                    detail=outcome.detail,
                    delay=round(delay, 3),
                )
                if self.on_retry:
                    self.on_retry(attempt, outcome, delay)
                self.sleep(delay)

        raise RetryError(self.service, self.retry.max_attempts, last.detail if last else "")

    __call__ = execute


def should_retry_http_status(status_code: int) -> bool:
    """
    Check if HTTP status code indicates a retryable error.

    Args:
        status_code: HTTP status code

    Returns:
        True if should retry
    """
    retryable_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return status_code in retryable_codes
