import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from onboarding.config import Settings


logger = logging.getLogger(__name__)
T = TypeVar("T")

TRANSIENT_MARKERS = (
    "timeout",
    "temporary",
    "connection refused",
    "connection reset",
    "broken pipe",
    "service unavailable",
    "too many requests",
)


class RetryExhaustedError(RuntimeError):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"max retries ({attempts}) exceeded: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.code = getattr(last_error, "code", "RETRY_EXHAUSTED")
        self.retryable = is_retryable_error(last_error)


class NonRetryableError(RuntimeError):
    def __init__(self, attempt: int, cause: BaseException) -> None:
        super().__init__(f"non-retryable error on attempt {attempt}: {cause}")
        self.attempt = attempt
        self.cause = cause
        self.code = getattr(cause, "code", "NON_RETRYABLE")
        self.retryable = False


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            jitter=settings.retry_jitter,
        )


def is_retryable_error(exc: BaseException | None) -> bool:
    if exc is None:
        return False

    # An explicit flag beats message sniffing.
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def _with_jitter(delay: float) -> float:
    # +/-10% around the nominal delay
    return delay * (0.9 + random.random() * 0.2)


async def retry_with_backoff(
    config: RetryConfig,
    operation: Callable[[], Awaitable[T]],
    *,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    classify = should_retry or is_retryable_error
    attempts = max(1, config.max_attempts)
    delay = config.initial_delay
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            if not classify(exc):
                raise NonRetryableError(attempt, exc) from exc
            if attempt == attempts:
                raise RetryExhaustedError(attempts, exc) from exc

            current = _with_jitter(delay) if config.jitter else delay
            logger.debug(
                "retrying after transient error",
                extra={"attempt": attempt, "delay_seconds": round(current, 3), "error": str(exc)},
            )
            # CancelledError propagates out of the sleep untouched.
            await asyncio.sleep(current)
            delay = min(delay * config.backoff_factor, config.max_delay)
            attempt += 1
