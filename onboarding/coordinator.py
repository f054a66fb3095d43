import asyncio
from collections.abc import Sequence
import logging
import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from onboarding.context import DedupMode, ProcessingContext
from onboarding.db_models import BulkOperation
from onboarding.detail_store import record_outcome
from onboarding.errors import OperationNotFound
from onboarding.operation_store import (
    complete_if_finished,
    get_operation,
    mark_processing,
    mark_terminal,
    record_progress,
)
from onboarding.pipeline import Pipeline, PipelineError
from onboarding.records import FarmerRecord
from onboarding.schemas import OperationStatus, RecordOutcome, RecordStatus
from onboarding.stages import DEDUPLICATION


logger = logging.getLogger(__name__)


def _outcome_for(context: ProcessingContext) -> RecordOutcome:
    elapsed_ms = int(context.elapsed * 1000)
    if context.skipped:
        return RecordOutcome(
            record_index=context.record_index,
            status=RecordStatus.SKIPPED,
            stage_name=DEDUPLICATION,
            error_code="DUPLICATE",
            error_message=context.skip_reason,
            farmer_id=context.deduplication.existing_farmer_id if context.deduplication else None,
            processing_time_ms=elapsed_ms,
        )
    return RecordOutcome(
        record_index=context.record_index,
        status=RecordStatus.SUCCESS,
        farmer_id=context.registration.farmer_id if context.registration else None,
        account_id=context.identity.account_id if context.identity else None,
        processing_time_ms=elapsed_ms,
    )


def _failure_for(context: ProcessingContext, error: PipelineError) -> RecordOutcome:
    return RecordOutcome(
        record_index=context.record_index,
        status=RecordStatus.FAILED,
        stage_name=error.stage_name,
        error_code=error.code,
        error_message=error.message,
        retryable=error.retryable,
        account_id=context.identity.account_id if context.identity else None,
        processing_time_ms=int(context.elapsed * 1000),
    )


class _BatchRun:
    def __init__(self, operation_id: str, cancel_event: threading.Event) -> None:
        self.operation_id = operation_id
        self.cancel_event = cancel_event
        self.fatal_error: SQLAlchemyError | None = None

    @property
    def stopping(self) -> bool:
        return self.cancel_event.is_set() or self.fatal_error is not None

    def fail(self, exc: SQLAlchemyError) -> None:
        if self.fatal_error is None:
            self.fatal_error = exc


class BatchCoordinator:
    """Fans the records of one bulk operation out over a fixed pool of workers.

    Workers take ``(index, record)`` pairs from a queue filled in index order
    and run the pipeline for one record at a time. Outcomes are persisted by
    record index, so completion order does not matter.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pipeline: Pipeline,
        *,
        max_concurrency: int = 10,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.max_concurrency = max_concurrency

    def _cancelled_in_store(self, operation_id: str) -> bool:
        with self.session_factory() as db:
            operation = get_operation(db, operation_id)
            return operation is None or operation.status == OperationStatus.CANCELLED.value

    def _persist(self, operation_id: str, outcome: RecordOutcome) -> None:
        with self.session_factory() as db:
            # Outcome and counters land in one transaction; a failure leaves
            # the record PENDING and uncounted.
            record_outcome(db, operation_id, outcome, commit=False)
            applied = record_progress(
                db,
                operation_id,
                successful=int(outcome.status is RecordStatus.SUCCESS),
                failed=int(outcome.status is RecordStatus.FAILED),
                skipped=int(outcome.status is RecordStatus.SKIPPED),
                commit=False,
            )
            db.commit()
            if applied:
                complete_if_finished(db, operation_id)
        if not applied:
            logger.warning(
                "progress update rejected",
                extra={"operation_id": operation_id, "record_index": outcome.record_index},
            )

    async def _worker(
        self,
        run: _BatchRun,
        queue: asyncio.Queue,
        *,
        org_id: str,
        user_id: str,
        dedup_mode: DedupMode,
        agent_id: str | None,
    ) -> None:
        while True:
            try:
                index, record = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            if run.stopping:
                return
            try:
                cancelled = await asyncio.to_thread(self._cancelled_in_store, run.operation_id)
            except SQLAlchemyError as exc:
                logger.exception("failed to read operation status", extra={"operation_id": run.operation_id})
                run.fail(exc)
                return
            if cancelled:
                run.cancel_event.set()
                return

            context = ProcessingContext(
                operation_id=run.operation_id,
                org_id=org_id,
                user_id=user_id,
                record_index=index,
                record=record,
                dedup_mode=dedup_mode,
                agent_id=agent_id,
            )
            try:
                context = await self.pipeline.execute(context, should_stop=run.cancel_event.is_set)
                outcome = _outcome_for(context)
            except PipelineError as exc:
                outcome = _failure_for(context, exc)

            try:
                await asyncio.to_thread(self._persist, run.operation_id, outcome)
            except SQLAlchemyError as exc:
                logger.exception(
                    "failed to persist record outcome",
                    extra={"operation_id": run.operation_id, "record_index": index},
                )
                run.fail(exc)
                return

    async def _drain(self, workers: list[asyncio.Task]) -> None:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    def _finish(self, run: _BatchRun) -> BulkOperation:
        with self.session_factory() as db:
            if run.fatal_error is not None:
                mark_terminal(db, run.operation_id, OperationStatus.FAILED, error=str(run.fatal_error))
            elif run.cancel_event.is_set():
                mark_terminal(db, run.operation_id, OperationStatus.CANCELLED)
            elif not complete_if_finished(db, run.operation_id):
                # Already COMPLETED by the last progress update, or records are left uncounted.
                mark_terminal(db, run.operation_id, OperationStatus.FAILED, error="batch ended with unprocessed records")

            operation = get_operation(db, run.operation_id)
            if operation is None:
                raise OperationNotFound(run.operation_id)
            return operation

    async def run(
        self,
        operation_id: str,
        items: Sequence[tuple[int, FarmerRecord]],
        *,
        org_id: str,
        user_id: str,
        dedup_mode: DedupMode = DedupMode.SKIP,
        agent_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkOperation:
        run = _BatchRun(operation_id, cancel_event or threading.Event())

        with self.session_factory() as db:
            if not mark_processing(db, operation_id):
                logger.info("operation not runnable, skipping dispatch", extra={"operation_id": operation_id})
                run.cancel_event.set()

        queue: asyncio.Queue = asyncio.Queue()
        for item in sorted(items, key=lambda pair: pair[0]):
            queue.put_nowait(item)

        worker_count = min(self.max_concurrency, max(1, len(items)))
        logger.info(
            "batch dispatch started",
            extra={"operation_id": operation_id, "records": len(items), "workers": worker_count},
        )

        workers = [
            asyncio.create_task(
                self._worker(
                    run,
                    queue,
                    org_id=org_id,
                    user_id=user_id,
                    dedup_mode=dedup_mode,
                    agent_id=agent_id,
                )
            )
            for _ in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            await self._drain(workers)
            with self.session_factory() as db:
                mark_terminal(db, operation_id, OperationStatus.CANCELLED, error="batch cancelled")
            logger.warning("batch cancelled", extra={"operation_id": operation_id})
            raise
        except Exception as exc:
            await self._drain(workers)
            logger.exception("batch dispatch crashed", extra={"operation_id": operation_id})
            with self.session_factory() as db:
                mark_terminal(db, operation_id, OperationStatus.FAILED, error=str(exc) or type(exc).__name__)
            raise

        operation = await asyncio.to_thread(self._finish, run)
        logger.info(
            "batch dispatch finished",
            extra={
                "operation_id": operation_id,
                "status": operation.status,
                "successful": operation.successful_records,
                "failed": operation.failed_records,
                "skipped": operation.skipped_records,
            },
        )
        return operation
