from collections.abc import Iterable, Sequence

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from onboarding.db_models import ProcessingDetail, utc_now
from onboarding.records import FarmerRecord
from onboarding.schemas import RecordOutcome, RecordStatus


INSERT_CHUNK_SIZE = 100


def _insert_ignore(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(ProcessingDetail).on_conflict_do_nothing(index_elements=["operation_id", "record_index"])
    if dialect == "postgresql":
        return postgresql.insert(ProcessingDetail).on_conflict_do_nothing(
            index_elements=["operation_id", "record_index"]
        )
    return None


def insert_pending_details(db: Session, operation_id: str, records: Sequence[FarmerRecord]) -> None:
    rows = [
        {
            "operation_id": operation_id,
            "record_index": index,
            "external_id": record.external_id or None,
            "status": RecordStatus.PENDING.value,
            "retryable": False,
            "retry_count": 0,
            "input_data": record.to_dict(),
        }
        for index, record in enumerate(records)
    ]

    stmt = _insert_ignore(db)
    for start in range(0, len(rows), INSERT_CHUNK_SIZE):
        chunk = rows[start : start + INSERT_CHUNK_SIZE]
        if stmt is not None:
            db.execute(stmt, chunk)
            continue

        # Dialects without ON CONFLICT: skip indices that already exist.
        existing = set(
            db.execute(
                select(ProcessingDetail.record_index).where(
                    ProcessingDetail.operation_id == operation_id,
                    ProcessingDetail.record_index.in_([row["record_index"] for row in chunk]),
                )
            ).scalars()
        )
        fresh = [row for row in chunk if row["record_index"] not in existing]
        if fresh:
            db.execute(insert(ProcessingDetail), fresh)
    db.commit()


def _outcome_values(outcome: RecordOutcome) -> dict[str, object]:
    return {
        "status": outcome.status.value,
        "stage_name": outcome.stage_name,
        "error_code": outcome.error_code,
        "error_message": outcome.error_message,
        "retryable": outcome.retryable,
        "farmer_id": outcome.farmer_id,
        "account_id": outcome.account_id,
        "processing_time_ms": outcome.processing_time_ms,
        "last_attempted_at": utc_now(),
    }


def _outcome_update(operation_id: str, outcome: RecordOutcome):
    return (
        update(ProcessingDetail)
        .where(ProcessingDetail.operation_id == operation_id, ProcessingDetail.record_index == outcome.record_index)
        .values(**_outcome_values(outcome))
        .execution_options(synchronize_session=False)
    )


def record_outcome(db: Session, operation_id: str, outcome: RecordOutcome, *, commit: bool = True) -> bool:
    result = db.execute(_outcome_update(operation_id, outcome))
    if commit:
        db.commit()
    return result.rowcount > 0


def record_outcomes(db: Session, operation_id: str, outcomes: Iterable[RecordOutcome]) -> int:
    updated = 0
    for outcome in outcomes:
        updated += db.execute(_outcome_update(operation_id, outcome)).rowcount
    db.commit()
    return updated


def get_details(db: Session, operation_id: str) -> list[ProcessingDetail]:
    stmt = (
        select(ProcessingDetail)
        .where(ProcessingDetail.operation_id == operation_id)
        .order_by(ProcessingDetail.record_index)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars().all())


def get_details_by_status(db: Session, operation_id: str, status: RecordStatus) -> list[ProcessingDetail]:
    stmt = (
        select(ProcessingDetail)
        .where(ProcessingDetail.operation_id == operation_id, ProcessingDetail.status == status.value)
        .order_by(ProcessingDetail.record_index)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars().all())


def get_failed_details(db: Session, operation_id: str) -> list[ProcessingDetail]:
    return get_details_by_status(db, operation_id, RecordStatus.FAILED)


def get_retryable_details(db: Session, operation_id: str, max_retries: int = 3) -> list[ProcessingDetail]:
    stmt = (
        select(ProcessingDetail)
        .where(
            ProcessingDetail.operation_id == operation_id,
            ProcessingDetail.status == RecordStatus.FAILED.value,
            ProcessingDetail.retry_count < max_retries,
        )
        .order_by(ProcessingDetail.record_index)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars().all())


def mark_for_retry(db: Session, operation_id: str, record_indices: Sequence[int], max_retries: int = 3) -> list[int]:
    if not record_indices:
        return []

    conditions = (
        ProcessingDetail.operation_id == operation_id,
        ProcessingDetail.record_index.in_(list(record_indices)),
        ProcessingDetail.status == RecordStatus.FAILED.value,
        ProcessingDetail.retry_count < max_retries,
    )
    eligible = list(
        db.execute(select(ProcessingDetail.record_index).where(*conditions).order_by(ProcessingDetail.record_index))
        .scalars()
        .all()
    )
    if not eligible:
        return []

    # The ceiling is checked again in the UPDATE; another pass may have run.
    db.execute(
        update(ProcessingDetail)
        .where(*conditions, ProcessingDetail.record_index.in_(eligible))
        .values(
            retry_count=ProcessingDetail.retry_count + 1,
            status=RecordStatus.PENDING.value,
            error_code=None,
            error_message=None,
            retryable=False,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return eligible


def error_summary(db: Session, operation_id: str) -> dict[str, int]:
    stmt = (
        select(ProcessingDetail.error_code, func.count())
        .where(
            ProcessingDetail.operation_id == operation_id,
            ProcessingDetail.status == RecordStatus.FAILED.value,
            ProcessingDetail.error_code.is_not(None),
        )
        .group_by(ProcessingDetail.error_code)
        .order_by(ProcessingDetail.error_code)
    )
    return {code: count for code, count in db.execute(stmt).all()}
