"""Circuit breaker guarding calls to an external dependency."""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
import logging
import threading
import time
from typing import TypeVar

from onboarding.errors import CircuitOpenError


logger = logging.getLogger(__name__)
T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        max_failures: int = 5,
        reset_timeout: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _acquire(self) -> None:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return

            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_at or 0.0)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                logger.info("circuit breaker half-open", extra={"breaker": self.name})
                self._state = CircuitState.HALF_OPEN

            # HALF_OPEN admits a single trial call at a time.
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                logger.info("circuit breaker closed after successful trial", extra={"breaker": self.name})
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN or self._failure_count >= self.max_failures:
                if self._state is not CircuitState.OPEN:
                    logger.error(
                        "circuit breaker opened",
                        extra={"breaker": self.name, "failure_count": self._failure_count},
                    )
                self._state = CircuitState.OPEN

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._acquire()
        try:
            result = await operation()
        except asyncio.CancelledError:
            # A cancelled call says nothing about the dependency.
            self._release_trial()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result
