from abc import ABC, abstractmethod
import asyncio
from collections.abc import Callable
import logging
import time

from onboarding.context import ProcessingContext
from onboarding.errors import StageOrderingError
from onboarding.metrics import MetricsTracker
from onboarding.retry import NonRetryableError, RetryExhaustedError, is_retryable_error


logger = logging.getLogger(__name__)


class PipelineStage(ABC):
    name: str = ""
    can_retry: bool = True
    timeout: float = 0.0

    @abstractmethod
    async def process(self, context: ProcessingContext) -> ProcessingContext:
        raise NotImplementedError


class PipelineError(Exception):
    def __init__(
        self,
        *,
        stage_name: str,
        stage_index: int,
        code: str,
        message: str,
        retryable: bool,
        duration: float,
    ) -> None:
        super().__init__(f"stage '{stage_name}' (#{stage_index}) failed: {message}")
        self.stage_name = stage_name
        self.stage_index = stage_index
        self.code = code
        self.message = message
        self.retryable = retryable
        self.duration = duration


def _root_cause(exc: BaseException) -> BaseException:
    if isinstance(exc, NonRetryableError):
        return exc.cause
    if isinstance(exc, RetryExhaustedError):
        return exc.last_error
    return exc


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "STAGE_TIMEOUT"
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return "STAGE_FAILED"


class Pipeline:
    """Runs a fixed, ordered list of stages against one record's context."""

    def __init__(self, metrics: MetricsTracker | None = None) -> None:
        self._stages: list[PipelineStage] = []
        self.metrics = metrics or MetricsTracker()

    def add_stage(self, stage: PipelineStage) -> "Pipeline":
        self._stages.append(stage)
        return self

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        return tuple(self._stages)

    def get_stages(self) -> tuple[PipelineStage, ...]:
        return self.stages

    def reset(self) -> "Pipeline":
        self._stages.clear()
        return self

    async def _run_stage(self, stage: PipelineStage, context: ProcessingContext) -> ProcessingContext:
        if stage.timeout > 0:
            return await asyncio.wait_for(stage.process(context), timeout=stage.timeout)
        return await stage.process(context)

    async def execute(
        self,
        context: ProcessingContext,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> ProcessingContext:
        run_started = time.monotonic()
        current = context

        for index, stage in enumerate(self._stages):
            if should_stop is not None and should_stop():
                self.metrics.record_pipeline(time.monotonic() - run_started, False)
                raise PipelineError(
                    stage_name=stage.name,
                    stage_index=index,
                    code="CANCELLED",
                    message="operation cancelled before stage started",
                    retryable=False,
                    duration=0.0,
                )

            stage_started = time.monotonic()
            try:
                current = await self._run_stage(stage, current)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                duration = time.monotonic() - stage_started
                cause = _root_cause(exc)
                code = _error_code(cause)
                self.metrics.record_stage(stage.name, duration, False, code)
                self.metrics.record_pipeline(time.monotonic() - run_started, False)

                timed_out = isinstance(cause, (asyncio.TimeoutError, TimeoutError))
                if timed_out:
                    message = f"stage timed out after {stage.timeout:g}s"
                else:
                    message = getattr(cause, "message", None) or str(cause) or type(cause).__name__

                log_extra = {
                    "operation_id": context.operation_id,
                    "record_index": context.record_index,
                    "stage": stage.name,
                    "error_code": code,
                }
                if isinstance(cause, StageOrderingError):
                    logger.error("stage ordering violated", extra=log_extra, exc_info=cause)
                else:
                    logger.error("pipeline stage failed", extra={**log_extra, "error": message})

                raise PipelineError(
                    stage_name=stage.name,
                    stage_index=index,
                    code=code,
                    message=message,
                    retryable=timed_out or (stage.can_retry and is_retryable_error(exc)),
                    duration=duration,
                ) from exc

            duration = time.monotonic() - stage_started
            self.metrics.record_stage(stage.name, duration, True)
            logger.debug(
                "pipeline stage completed",
                extra={
                    "operation_id": context.operation_id,
                    "record_index": context.record_index,
                    "stage": stage.name,
                    "duration_seconds": round(duration, 4),
                },
            )

            if current.skipped:
                logger.info(
                    "record skipped",
                    extra={
                        "operation_id": context.operation_id,
                        "record_index": context.record_index,
                        "stage": stage.name,
                        "reason": current.skip_reason,
                    },
                )
                break

        self.metrics.record_pipeline(time.monotonic() - run_started, True)
        return current
