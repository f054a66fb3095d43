from dataclasses import dataclass, field
from enum import Enum
import time
from typing import TYPE_CHECKING

from onboarding.errors import StageOrderingError

if TYPE_CHECKING:
    from onboarding.records import FarmerRecord


class DedupMode(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    ERROR = "error"


@dataclass(frozen=True)
class ValidationResult:
    phone_number: str
    valid: bool = True


@dataclass(frozen=True)
class DeduplicationResult:
    is_duplicate: bool
    existing_farmer_id: str | None = None
    resumed: bool = False
    action: str | None = None


@dataclass(frozen=True)
class IdentityResult:
    account_id: str
    username: str
    user_existed: bool


@dataclass(frozen=True)
class RegistrationResult:
    farmer_id: str
    existed: bool = False


@dataclass(frozen=True)
class LinkageResult:
    account_id: str
    org_id: str
    link_status: str = "ACTIVE"


@dataclass(frozen=True)
class AgentAssignmentResult:
    assigned: bool
    agent_id: str | None = None
    reason: str | None = None


@dataclass
class ProcessingContext:
    """Per-record carrier that flows through the stages of one pipeline run.

    Each known stage writes its result to a typed attribute. Later stages read
    earlier results through ``require_identity`` / ``require_registration`` so a
    mis-ordered pipeline fails loudly instead of passing ``None`` along.
    """

    operation_id: str
    org_id: str
    user_id: str
    record_index: int
    record: "FarmerRecord"
    dedup_mode: DedupMode = DedupMode.SKIP
    agent_id: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)
    skip_reason: str | None = None

    validation: ValidationResult | None = None
    deduplication: DeduplicationResult | None = None
    identity: IdentityResult | None = None
    registration: RegistrationResult | None = None
    linkage: LinkageResult | None = None
    agent_assignment: AgentAssignmentResult | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def stage_results(self) -> dict[str, object]:
        named = {
            "validation": self.validation,
            "deduplication": self.deduplication,
            "identity_creation": self.identity,
            "domain_registration": self.registration,
            "organization_linkage": self.linkage,
            "agent_assignment": self.agent_assignment,
        }
        return {name: result for name, result in named.items() if result is not None}

    def mark_skipped(self, reason: str) -> None:
        self.skip_reason = reason

    def require_identity(self) -> IdentityResult:
        if self.identity is None:
            raise StageOrderingError("identity creation result not found in context")
        return self.identity

    def require_registration(self) -> RegistrationResult:
        if self.registration is None:
            raise StageOrderingError("domain registration result not found in context")
        return self.registration
