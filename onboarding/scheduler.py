from datetime import datetime, timedelta
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from onboarding.config import Settings
from onboarding.db_models import utc_now
from onboarding.operation_store import find_stale_operations, mark_terminal
from onboarding.schemas import OperationStatus


logger = logging.getLogger(__name__)


def fail_stale_operations(
    session_factory: sessionmaker[Session],
    stale_minutes: int,
    *,
    now: datetime | None = None,
) -> list[str]:
    cutoff = (now or utc_now()) - timedelta(minutes=stale_minutes)
    failed: list[str] = []

    with session_factory() as db:
        for operation in find_stale_operations(db, cutoff):
            error = f"stale operation: no progress within {stale_minutes} minutes"
            # Conditional transition: an operation that finished meanwhile is left alone.
            if mark_terminal(db, operation.id, OperationStatus.FAILED, error=error):
                failed.append(operation.id)
                logger.warning(
                    "stale bulk operation marked failed",
                    extra={"operation_id": operation.id, "status": operation.status, "stale_minutes": stale_minutes},
                )
    return failed


def _sweep(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    failed = fail_stale_operations(session_factory, settings.stale_operation_minutes)
    logger.info("stale operation sweep completed", extra={"failed_operations": len(failed)})


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _sweep,
        "interval",
        args=[settings, session_factory],
        minutes=settings.sweep_interval_minutes,
        id="stale_operation_sweep",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "sweep_interval_minutes": settings.sweep_interval_minutes,
            "stale_operation_minutes": settings.stale_operation_minutes,
        },
    )

    if run_now:
        _sweep(settings, session_factory)

    scheduler.start()
