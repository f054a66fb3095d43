from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({OperationStatus.PENDING, OperationStatus.PROCESSING})


class RecordStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class InputFormat(str, Enum):
    CSV = "CSV"
    JSON = "JSON"


@dataclass(frozen=True)
class InvalidRecord:
    record_index: int
    field: str
    reason: str
    code: str


@dataclass(frozen=True)
class ValidationReport:
    total_records: int
    valid_records: int
    errors: list[InvalidRecord]

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class BatchOptions:
    dedup_mode: str = "skip"
    agent_id: str | None = None
    max_concurrency: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {"dedup_mode": self.dedup_mode, "agent_id": self.agent_id, "max_concurrency": self.max_concurrency}

    @classmethod
    def from_dict(cls, data: dict[str, object] | None) -> "BatchOptions":
        data = data or {}
        max_concurrency = data.get("max_concurrency")
        return cls(
            dedup_mode=str(data.get("dedup_mode") or "skip"),
            agent_id=str(data["agent_id"]) if data.get("agent_id") else None,
            max_concurrency=int(max_concurrency) if max_concurrency is not None else None,
        )


@dataclass(frozen=True)
class RecordOutcome:
    record_index: int
    status: RecordStatus
    stage_name: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    farmer_id: str | None = None
    account_id: str | None = None
    processing_time_ms: int | None = None


@dataclass(frozen=True)
class SubmitResult:
    operation_id: str
    status: str
    total_records: int
    successful_records: int
    failed_records: int
    skipped_records: int


@dataclass(frozen=True)
class OperationStatusView:
    operation_id: str
    org_id: str
    status: str
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    skipped_records: int
    progress_percentage: float
    start_time: datetime | None
    end_time: datetime | None
    processing_time_ms: int | None
    estimated_completion: datetime | None
    retry_passes: int
    can_retry: bool
    error: str | None
    error_summary: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryResult:
    operation_id: str
    retried: int
    successful_records: int
    failed_records: int
    status: str
