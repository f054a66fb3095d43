"""Bulk operation lifecycle: PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED."""

from datetime import datetime, timedelta
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from onboarding.db_models import BulkOperation, utc_now
from onboarding.schemas import ACTIVE_STATUSES, OperationStatus


_ACTIVE = [status.value for status in ACTIVE_STATUSES]


def new_operation_id() -> str:
    return f"bulk_{uuid.uuid4().hex}"


def create_operation(
    db: Session,
    *,
    org_id: str,
    initiated_by: str,
    total_records: int,
    input_format: str,
    options: dict[str, object],
) -> BulkOperation:
    operation = BulkOperation(
        id=new_operation_id(),
        org_id=org_id,
        initiated_by=initiated_by,
        status=OperationStatus.PENDING.value,
        input_format=input_format,
        total_records=total_records,
        options=options,
    )
    db.add(operation)
    db.commit()
    db.refresh(operation)
    return operation


def get_operation(db: Session, operation_id: str) -> BulkOperation | None:
    stmt = (
        select(BulkOperation)
        .where(BulkOperation.id == operation_id, BulkOperation.is_deleted.is_(False))
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_operations(db: Session, *, org_id: str | None = None, active_only: bool = False) -> list[BulkOperation]:
    stmt = select(BulkOperation).where(BulkOperation.is_deleted.is_(False))
    if org_id is not None:
        stmt = stmt.where(BulkOperation.org_id == org_id)
    if active_only:
        stmt = stmt.where(BulkOperation.status.in_(_ACTIVE))
    stmt = stmt.order_by(BulkOperation.created_at.desc())
    return list(db.execute(stmt).scalars().all())


def mark_processing(db: Session, operation_id: str) -> bool:
    stmt = (
        update(BulkOperation)
        .where(BulkOperation.id == operation_id, BulkOperation.status.in_(_ACTIVE))
        .values(
            status=OperationStatus.PROCESSING.value,
            # A repeated transition keeps the first start time.
            start_time=func.coalesce(BulkOperation.start_time, utc_now()),
        )
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def _duration_ms(operation: BulkOperation, end_time: datetime) -> int:
    started = operation.start_time or operation.created_at
    return max(0, int((end_time - started).total_seconds() * 1000))


def _transition(db: Session, operation_id: str, status: OperationStatus, *conditions, error: str | None = None) -> bool:
    operation = get_operation(db, operation_id)
    if operation is None:
        return False

    end_time = utc_now()
    values: dict[str, object] = {
        "status": status.value,
        "end_time": end_time,
        "processing_time_ms": _duration_ms(operation, end_time),
    }
    if error is not None:
        values["error"] = error

    stmt = update(BulkOperation).where(BulkOperation.id == operation_id, *conditions).values(**values)
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def mark_terminal(db: Session, operation_id: str, status: OperationStatus, error: str | None = None) -> bool:
    if not status.is_terminal:
        raise ValueError(f"not a terminal status: {status.value}")
    return _transition(db, operation_id, status, BulkOperation.status.in_(_ACTIVE), error=error)


def complete_if_finished(db: Session, operation_id: str) -> bool:
    # COMPLETED means every record finished, not that every record succeeded.
    return _transition(
        db,
        operation_id,
        OperationStatus.COMPLETED,
        BulkOperation.status == OperationStatus.PROCESSING.value,
        BulkOperation.processed_records >= BulkOperation.total_records,
    )


def record_progress(
    db: Session,
    operation_id: str,
    *,
    successful: int = 0,
    failed: int = 0,
    skipped: int = 0,
    commit: bool = True,
) -> bool:
    """Add finished records to the operation counters.

    With ``commit=False`` the update joins the caller's transaction and the
    caller is responsible for ``complete_if_finished`` after committing.
    """
    count = successful + failed + skipped
    if count <= 0:
        return False

    stmt = (
        update(BulkOperation)
        .where(
            BulkOperation.id == operation_id,
            BulkOperation.processed_records + count <= BulkOperation.total_records,
        )
        .values(
            processed_records=BulkOperation.processed_records + count,
            successful_records=BulkOperation.successful_records + successful,
            failed_records=BulkOperation.failed_records + failed,
            skipped_records=BulkOperation.skipped_records + skipped,
        )
    )
    result = db.execute(stmt)
    if not commit:
        return result.rowcount > 0

    db.commit()
    if result.rowcount == 0:
        return False
    complete_if_finished(db, operation_id)
    return True


def reopen_for_retry(db: Session, operation_id: str, failed: int) -> bool:
    """Move a finished operation back to PROCESSING for a retry pass.

    ``failed`` records leave the processed and failed counters; records that
    never finished were not counted and need no adjustment.
    """
    stmt = (
        update(BulkOperation)
        .where(
            BulkOperation.id == operation_id,
            BulkOperation.is_deleted.is_(False),
            BulkOperation.status.in_([OperationStatus.COMPLETED.value, OperationStatus.FAILED.value]),
            BulkOperation.processed_records >= failed,
            BulkOperation.failed_records >= failed,
        )
        .values(
            status=OperationStatus.PROCESSING.value,
            processed_records=BulkOperation.processed_records - failed,
            failed_records=BulkOperation.failed_records - failed,
            end_time=None,
            processing_time_ms=None,
            error=None,
            retry_passes=BulkOperation.retry_passes + 1,
        )
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def set_result_file(db: Session, operation_id: str, path: str) -> None:
    db.execute(update(BulkOperation).where(BulkOperation.id == operation_id).values(result_file_path=path))
    db.commit()


def soft_delete_operation(db: Session, operation_id: str) -> bool:
    stmt = (
        update(BulkOperation)
        .where(BulkOperation.id == operation_id, BulkOperation.is_deleted.is_(False))
        .values(is_deleted=True)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def find_stale_operations(db: Session, older_than: datetime) -> list[BulkOperation]:
    stmt = (
        select(BulkOperation)
        .where(
            BulkOperation.is_deleted.is_(False),
            BulkOperation.status.in_(_ACTIVE),
            BulkOperation.updated_at < older_than,
        )
        .order_by(BulkOperation.updated_at)
    )
    return list(db.execute(stmt).scalars().all())


def progress_percentage(operation: BulkOperation) -> float:
    if operation.total_records <= 0:
        return 0.0
    return round(operation.processed_records / operation.total_records * 100, 2)


def estimated_completion(operation: BulkOperation, now: datetime) -> datetime | None:
    if operation.status != OperationStatus.PROCESSING.value or operation.start_time is None:
        return None
    if operation.processed_records <= 0 or operation.processed_records >= operation.total_records:
        return None

    elapsed = (now - operation.start_time).total_seconds()
    per_record = elapsed / operation.processed_records
    remaining = operation.total_records - operation.processed_records
    return now + timedelta(seconds=per_record * remaining)
