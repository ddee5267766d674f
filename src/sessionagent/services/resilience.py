"""Retry and circuit-breaker primitives for calls to the generative backend.

States of the breaker:
- CLOSED: normal operation, calls pass through
- OPEN: too many consecutive failures, calls rejected immediately
- HALF_OPEN: cooldown elapsed, a single trial call is allowed
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict

import openai

from ..errors import BackendTimeoutError, CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open trial."""

    def __init__(
        self,
        name: str = "backend",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.reset_timeout

    def before_call(self) -> None:
        """Raise CircuitOpenError unless a call may proceed now."""
        if self._state == CircuitState.OPEN:
            if not self._cooldown_elapsed():
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' open - too many recent failures"
                )
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker '%s' half-open, allowing a trial call", self.name)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' half-open - trial call in progress"
                )
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit breaker '%s' closed", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN:
            self._open()
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._open()
            logger.warning(
                "Circuit breaker '%s' opened after %d consecutive failures",
                self.name,
                self._failures,
            )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` through the breaker, recording its outcome."""
        self.before_call()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancelled: no outcome to record, but the trial slot must be freed.
            self._trial_in_flight = False
            raise
        self.record_success()
        return result

    def status(self) -> Dict[str, Any]:
        return {"state": self.state.value, "failures": self._failures}


class RetryPolicy:
    """Exponential backoff: attempt ``n`` (0-based) waits ``base_delay * 2**n`` before the next."""

    RETRYABLE_STATUS_CODES: ClassVar[set] = {408, 409, 429, 500, 502, 503, 504}

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2**attempt)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        if isinstance(error, (BackendTimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
            return True
        if isinstance(error, openai.APIStatusError):
            return error.status_code in self.RETRYABLE_STATUS_CODES
        return False
