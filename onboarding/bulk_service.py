import asyncio
from collections.abc import Sequence
import functools
import logging
from pathlib import Path
import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from onboarding.circuit_breaker import CircuitBreaker
from onboarding.config import Settings
from onboarding.context import DedupMode
from onboarding.coordinator import BatchCoordinator
from onboarding.db_models import BulkOperation, ProcessingDetail, utc_now
from onboarding.detail_store import (
    error_summary,
    get_details,
    get_details_by_status,
    get_failed_details,
    get_retryable_details,
    insert_pending_details,
    mark_for_retry,
)
from onboarding.errors import (
    BatchPersistenceError,
    InvalidOperationState,
    OperationNotFound,
    RecordParseError,
    ValidationFailed,
)
from onboarding.farmer_store import DatabaseFarmerRegistry
from onboarding.metrics import MetricsTracker
from onboarding.operation_store import (
    create_operation,
    estimated_completion,
    get_operation,
    mark_terminal,
    progress_percentage,
    reopen_for_retry,
    set_result_file,
)
from onboarding.records import FarmerRecord, render_results, render_template, validate_batch, write_text
from onboarding.retry import RetryConfig
from onboarding.schemas import (
    BatchOptions,
    OperationStatus,
    OperationStatusView,
    RecordStatus,
    RetryResult,
    SubmitResult,
    ValidationReport,
)
from onboarding.services import AccountService, FarmerRegistry, LinkageService
from onboarding.stages import build_onboarding_pipeline


logger = logging.getLogger(__name__)

RESULT_FORMATS = ("csv", "json")


def can_retry(operation: BulkOperation) -> bool:
    if operation.status == OperationStatus.FAILED.value:
        return True
    return operation.status == OperationStatus.COMPLETED.value and operation.failed_records > 0


def _detail_row(detail: ProcessingDetail) -> dict[str, object]:
    return {
        "record_index": detail.record_index,
        "external_id": detail.external_id,
        "status": detail.status,
        "stage_name": detail.stage_name,
        "farmer_id": detail.farmer_id,
        "account_id": detail.account_id,
        "error_code": detail.error_code,
        "error_message": detail.error_message,
        "retryable": detail.retryable,
        "retry_count": detail.retry_count,
    }


class BulkOnboardingService:
    """Entry point for submitting, tracking and retrying bulk onboarding batches.

    One instance per process: it owns the circuit breakers and the metrics
    tracker shared by every batch, plus the cancel flags of batches running
    here.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        accounts: AccountService,
        linkage: LinkageService,
        registry: FarmerRegistry | None = None,
        metrics: MetricsTracker | None = None,
        account_breaker: CircuitBreaker | None = None,
        linkage_breaker: CircuitBreaker | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.accounts = accounts
        self.linkage = linkage
        self.registry = registry or DatabaseFarmerRegistry(session_factory)
        self.metrics = metrics or MetricsTracker()
        self.retry_config = RetryConfig.from_settings(settings)
        self.account_breaker = account_breaker or CircuitBreaker(
            "account_service",
            settings.breaker_max_failures,
            settings.breaker_reset_timeout_seconds,
        )
        self.linkage_breaker = linkage_breaker or CircuitBreaker(
            "linkage_service",
            settings.breaker_max_failures,
            settings.breaker_reset_timeout_seconds,
        )
        self._cancel_events: dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()
        self._tasks: dict[str, asyncio.Task] = {}

    def _coordinator(self, max_concurrency: int) -> BatchCoordinator:
        pipeline = build_onboarding_pipeline(
            accounts=self.accounts,
            linkage=self.linkage,
            registry=self.registry,
            metrics=self.metrics,
            account_breaker=self.account_breaker,
            linkage_breaker=self.linkage_breaker,
            retry_config=self.retry_config,
        )
        return BatchCoordinator(self.session_factory, pipeline, max_concurrency=max_concurrency)

    def _register_run(self, operation_id: str) -> threading.Event:
        event = threading.Event()
        with self._events_lock:
            self._cancel_events[operation_id] = event
        return event

    def _unregister_run(self, operation_id: str) -> None:
        with self._events_lock:
            self._cancel_events.pop(operation_id, None)

    def _require_operation(self, db: Session, operation_id: str) -> BulkOperation:
        operation = get_operation(db, operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)
        return operation

    async def _dispatch(
        self,
        operation_id: str,
        items: list[tuple[int, FarmerRecord]],
        *,
        org_id: str,
        user_id: str,
        options: BatchOptions,
    ) -> BulkOperation:
        coordinator = self._coordinator(options.max_concurrency or self.settings.max_concurrency)
        cancel_event = self._register_run(operation_id)
        try:
            return await coordinator.run(
                operation_id,
                items,
                org_id=org_id,
                user_id=user_id,
                dedup_mode=DedupMode(options.dedup_mode),
                agent_id=options.agent_id,
                cancel_event=cancel_event,
            )
        finally:
            self._unregister_run(operation_id)

    def _create_batch(
        self,
        records: Sequence[FarmerRecord],
        *,
        org_id: str,
        user_id: str,
        input_format: str,
        options: BatchOptions,
    ) -> str:
        if not records:
            raise RecordParseError("no farmer records to process")
        if len(records) > self.settings.max_records:
            raise RecordParseError(f"exceeded maximum record limit of {self.settings.max_records}")
        try:
            DedupMode(options.dedup_mode)
        except ValueError as exc:
            raise ValidationFailed(f"unknown dedup mode: {options.dedup_mode}", code="INVALID_OPTIONS") from exc
        if options.max_concurrency is not None and options.max_concurrency < 1:
            raise ValidationFailed("max_concurrency must be at least 1", code="INVALID_OPTIONS")

        with self.session_factory() as db:
            operation = create_operation(
                db,
                org_id=org_id,
                initiated_by=user_id,
                total_records=len(records),
                input_format=input_format.upper(),
                options=options.to_dict(),
            )
            operation_id = operation.id
            try:
                insert_pending_details(db, operation_id, records)
            except SQLAlchemyError as exc:
                db.rollback()
                mark_terminal(db, operation_id, OperationStatus.FAILED, error=f"failed to store processing details: {exc}")
                logger.exception("failed to store processing details", extra={"operation_id": operation_id})
                raise BatchPersistenceError(f"failed to store processing details for {operation_id}") from exc

        logger.info(
            "bulk operation submitted",
            extra={"operation_id": operation_id, "org_id": org_id, "records": len(records)},
        )
        return operation_id

    async def submit_batch(
        self,
        records: Sequence[FarmerRecord],
        *,
        org_id: str,
        user_id: str,
        input_format: str = "JSON",
        options: BatchOptions | None = None,
    ) -> SubmitResult:
        """Create an operation and process every record before returning."""
        options = options or BatchOptions()
        operation_id = self._create_batch(
            records, org_id=org_id, user_id=user_id, input_format=input_format, options=options
        )
        operation = await self._dispatch(
            operation_id,
            list(enumerate(records)),
            org_id=org_id,
            user_id=user_id,
            options=options,
        )
        return SubmitResult(
            operation_id=operation.id,
            status=operation.status,
            total_records=operation.total_records,
            successful_records=operation.successful_records,
            failed_records=operation.failed_records,
            skipped_records=operation.skipped_records,
        )

    async def start_batch(
        self,
        records: Sequence[FarmerRecord],
        *,
        org_id: str,
        user_id: str,
        input_format: str = "JSON",
        options: BatchOptions | None = None,
    ) -> str:
        """Create an operation and process it in the background; returns the operation id."""
        options = options or BatchOptions()
        operation_id = self._create_batch(
            records, org_id=org_id, user_id=user_id, input_format=input_format, options=options
        )
        task = asyncio.create_task(
            self._dispatch(
                operation_id,
                list(enumerate(records)),
                org_id=org_id,
                user_id=user_id,
                options=options,
            ),
            name=f"bulk-{operation_id}",
        )
        self._tasks[operation_id] = task
        task.add_done_callback(functools.partial(self._forget_task, operation_id))
        return operation_id

    def _forget_task(self, operation_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(operation_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background batch failed", extra={"operation_id": operation_id}, exc_info=exc)

    async def wait_for_operation(self, operation_id: str) -> OperationStatusView:
        task = self._tasks.get(operation_id)
        if task is not None:
            await task
        return self.get_status(operation_id)

    def get_status(self, operation_id: str) -> OperationStatusView:
        with self.session_factory() as db:
            operation = self._require_operation(db, operation_id)
            summary = error_summary(db, operation_id)

        return OperationStatusView(
            operation_id=operation.id,
            org_id=operation.org_id,
            status=operation.status,
            total_records=operation.total_records,
            processed_records=operation.processed_records,
            successful_records=operation.successful_records,
            failed_records=operation.failed_records,
            skipped_records=operation.skipped_records,
            progress_percentage=progress_percentage(operation),
            start_time=operation.start_time,
            end_time=operation.end_time,
            processing_time_ms=operation.processing_time_ms,
            estimated_completion=estimated_completion(operation, utc_now()),
            retry_passes=operation.retry_passes,
            can_retry=can_retry(operation),
            error=operation.error,
            error_summary=summary,
        )

    def cancel_operation(self, operation_id: str) -> OperationStatusView:
        with self.session_factory() as db:
            operation = self._require_operation(db, operation_id)
            if not mark_terminal(db, operation_id, OperationStatus.CANCELLED, error="cancelled by operator"):
                raise InvalidOperationState(f"operation {operation_id} is already {operation.status}")

        with self._events_lock:
            event = self._cancel_events.get(operation_id)
        if event is not None:
            event.set()

        logger.info("bulk operation cancelled", extra={"operation_id": operation_id})
        return self.get_status(operation_id)

    def failed_records(self, operation_id: str) -> list[dict[str, object]]:
        with self.session_factory() as db:
            self._require_operation(db, operation_id)
            return [_detail_row(detail) for detail in get_failed_details(db, operation_id)]

    async def retry_failed_records(self, operation_id: str) -> RetryResult:
        max_retries = self.settings.max_record_retries
        with self.session_factory() as db:
            operation = self._require_operation(db, operation_id)
            if operation.status not in (OperationStatus.COMPLETED.value, OperationStatus.FAILED.value):
                raise InvalidOperationState(f"operation {operation_id} is {operation.status}; cannot retry")

            pending: list[ProcessingDetail] = []
            if operation.status == OperationStatus.FAILED.value:
                # A pass that died mid-batch leaves records PENDING and uncounted.
                pending = get_details_by_status(db, operation_id, RecordStatus.PENDING)
            candidates = [d for d in get_retryable_details(db, operation_id, max_retries) if d.retryable]
            indices = mark_for_retry(db, operation_id, [d.record_index for d in candidates], max_retries)
            if not indices and not pending:
                logger.info("no records eligible for retry", extra={"operation_id": operation_id})
                return RetryResult(
                    operation_id=operation_id,
                    retried=0,
                    successful_records=operation.successful_records,
                    failed_records=operation.failed_records,
                    status=operation.status,
                )

            if not reopen_for_retry(db, operation_id, len(indices)):
                raise InvalidOperationState(f"operation {operation_id} could not be reopened for retry")

            by_index = {d.record_index: d for d in [*candidates, *pending]}
            dispatch = sorted({*indices, *(d.record_index for d in pending)})
            items = [(index, FarmerRecord.from_dict(by_index[index].input_data or {})) for index in dispatch]

        logger.info("retry pass started", extra={"operation_id": operation_id, "records": len(items)})
        operation = await self._dispatch(
            operation_id,
            items,
            org_id=operation.org_id,
            user_id=operation.initiated_by,
            options=BatchOptions.from_dict(operation.options),
        )
        return RetryResult(
            operation_id=operation_id,
            retried=len(items),
            successful_records=operation.successful_records,
            failed_records=operation.failed_records,
            status=operation.status,
        )

    def results_summary(self, operation_id: str, fmt: str = "csv") -> str:
        if fmt.lower() not in RESULT_FORMATS:
            raise ValidationFailed(f"unsupported results format: {fmt}", code="INVALID_OPTIONS")
        with self.session_factory() as db:
            self._require_operation(db, operation_id)
            rows = [_detail_row(detail) for detail in get_details(db, operation_id)]
        return render_results(rows, fmt)

    def write_results_file(self, operation_id: str, fmt: str = "csv", path: Path | None = None) -> Path:
        content = self.results_summary(operation_id, fmt)
        target = path or Path(self.settings.output_dir) / "results" / f"{operation_id}.{fmt.lower()}"
        write_text(target, content)
        with self.session_factory() as db:
            set_result_file(db, operation_id, str(target))
        return target

    def upload_template(self, fmt: str = "csv", include_example: bool = True) -> str:
        return render_template(fmt, include_example)

    def validate_batch(self, records: Sequence[FarmerRecord]) -> ValidationReport:
        return validate_batch(list(records))

    def metrics_snapshot(self) -> dict[str, object]:
        return self.metrics.snapshot()
