"""The six onboarding stages and the sequence that runs them."""

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import TypeVar

from onboarding.circuit_breaker import CircuitBreaker
from onboarding.context import (
    AgentAssignmentResult,
    DedupMode,
    DeduplicationResult,
    IdentityResult,
    LinkageResult,
    ProcessingContext,
    RegistrationResult,
    ValidationResult,
)
from onboarding.credentials import password_for
from onboarding.errors import DuplicateFarmer, ServiceError
from onboarding.metrics import MetricsTracker
from onboarding.pipeline import Pipeline, PipelineStage
from onboarding.records import check_record
from onboarding.retry import RetryConfig, retry_with_backoff
from onboarding.services import (
    AccountRequest,
    AccountService,
    FarmerRecordRef,
    FarmerRegistration,
    FarmerRegistry,
    LinkageService,
)


logger = logging.getLogger(__name__)
T = TypeVar("T")

VALIDATION = "validation"
DEDUPLICATION = "deduplication"
IDENTITY_CREATION = "identity_creation"
DOMAIN_REGISTRATION = "domain_registration"
ORGANIZATION_LINKAGE = "organization_linkage"
AGENT_ASSIGNMENT = "agent_assignment"

DUPLICATE_SKIP_REASON = "duplicate farmer: phone number already registered"
NO_AGENT_REASON = "no agent specified"


async def call_dependency(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_config: RetryConfig,
    breaker: CircuitBreaker | None = None,
) -> T:
    async def with_retry() -> T:
        return await retry_with_backoff(retry_config, operation)

    if breaker is None:
        return await with_retry()
    return await breaker.call(with_retry)


class ValidationStage(PipelineStage):
    name = VALIDATION
    can_retry = False
    timeout = 30.0

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        phone = check_record(context.record)
        context.validation = ValidationResult(phone_number=phone)
        return context


def _registered_by(farmer: FarmerRecordRef, context: ProcessingContext) -> bool:
    return (
        farmer.created_by_operation_id == context.operation_id
        and farmer.source_record_index == context.record_index
    )


class DeduplicationStage(PipelineStage):
    name = DEDUPLICATION
    can_retry = True
    timeout = 10.0

    def __init__(self, registry: FarmerRegistry, *, retry_config: RetryConfig | None = None) -> None:
        self.registry = registry
        self.retry_config = retry_config or RetryConfig()

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        phone = context.validation.phone_number if context.validation else context.record.phone_number
        existing = await call_dependency(
            lambda: self.registry.find_farmer(phone, context.org_id),
            retry_config=self.retry_config,
        )

        if existing is None:
            context.deduplication = DeduplicationResult(is_duplicate=False)
            return context

        if _registered_by(existing, context):
            # Written by an earlier run of this same record; carry on so the
            # remaining stages can finish.
            context.deduplication = DeduplicationResult(
                is_duplicate=False,
                existing_farmer_id=existing.id,
                resumed=True,
            )
            return context

        if context.dedup_mode is DedupMode.ERROR:
            raise DuplicateFarmer(
                f"duplicate farmer: phone number already registered as {existing.id}",
                existing_farmer_id=existing.id,
            )

        context.deduplication = DeduplicationResult(
            is_duplicate=True,
            existing_farmer_id=existing.id,
            action=context.dedup_mode.value,
        )
        if context.dedup_mode is DedupMode.SKIP:
            context.mark_skipped(DUPLICATE_SKIP_REASON)
        return context


class IdentityCreationStage(PipelineStage):
    name = IDENTITY_CREATION
    can_retry = True
    timeout = 30.0

    def __init__(
        self,
        accounts: AccountService,
        *,
        breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.accounts = accounts
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()

    async def _provision(self, context: ProcessingContext, phone: str) -> IdentityResult:
        username = f"farmer_{phone}"

        # Lookup runs on every attempt so a create that landed before a
        # timeout is reused instead of duplicated.
        existing = await self.accounts.lookup_account_by_phone(phone)
        if existing is not None:
            return IdentityResult(account_id=existing.id, username=existing.username or username, user_existed=True)

        record = context.record
        request = AccountRequest(
            username=username,
            mobile_number=phone,
            full_name=record.full_name,
            password=record.password or password_for(record.first_name, phone),
            email=record.email or None,
        )
        account = await self.accounts.create_account(request)
        if not account.id:
            raise ServiceError("account service response did not include an account id")
        return IdentityResult(account_id=account.id, username=username, user_existed=False)

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        phone = context.validation.phone_number if context.validation else context.record.phone_number
        context.identity = await call_dependency(
            lambda: self._provision(context, phone),
            retry_config=self.retry_config,
            breaker=self.breaker,
        )
        return context


class DomainRegistrationStage(PipelineStage):
    name = DOMAIN_REGISTRATION
    can_retry = True
    timeout = 20.0

    def __init__(self, registry: FarmerRegistry, *, retry_config: RetryConfig | None = None) -> None:
        self.registry = registry
        self.retry_config = retry_config or RetryConfig()

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        identity = context.require_identity()
        record = context.record
        phone = context.validation.phone_number if context.validation else record.phone_number

        request = FarmerRegistration(
            account_id=identity.account_id,
            org_id=context.org_id,
            operation_id=context.operation_id,
            record_index=context.record_index,
            first_name=record.first_name,
            last_name=record.last_name,
            phone_number=phone,
            email=record.email or None,
            date_of_birth=record.date_of_birth or None,
            gender=record.gender or None,
            street_address=record.street_address or None,
            city=record.city or None,
            state=record.state or None,
            postal_code=record.postal_code or None,
            country=record.country or None,
            land_ownership_type=record.land_ownership_type or None,
            custom_fields=dict(record.custom_fields),
            refresh_existing=context.dedup_mode is DedupMode.UPDATE,
        )
        farmer = await call_dependency(lambda: self.registry.create_farmer(request), retry_config=self.retry_config)
        if farmer.existed and not _registered_by(farmer, context):
            # Another record got there first, e.g. a repeated phone number in
            # this batch racing through deduplication on a second worker.
            if context.dedup_mode is DedupMode.ERROR:
                raise DuplicateFarmer(
                    f"duplicate farmer: phone number already registered as {farmer.id}",
                    existing_farmer_id=farmer.id,
                )
            if context.dedup_mode is DedupMode.SKIP:
                context.deduplication = DeduplicationResult(
                    is_duplicate=True,
                    existing_farmer_id=farmer.id,
                    action=context.dedup_mode.value,
                )
                context.mark_skipped(DUPLICATE_SKIP_REASON)
                return context
        context.registration = RegistrationResult(farmer_id=farmer.id, existed=farmer.existed)
        return context


class OrganizationLinkageStage(PipelineStage):
    name = ORGANIZATION_LINKAGE
    can_retry = True
    timeout = 15.0

    def __init__(
        self,
        linkage: LinkageService,
        *,
        breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.linkage = linkage
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        identity = context.require_identity()
        context.require_registration()

        await call_dependency(
            lambda: self.linkage.link_farmer_to_org(identity.account_id, context.org_id),
            retry_config=self.retry_config,
            breaker=self.breaker,
        )
        context.linkage = LinkageResult(account_id=identity.account_id, org_id=context.org_id)
        return context


class AgentAssignmentStage(PipelineStage):
    name = AGENT_ASSIGNMENT
    can_retry = True
    timeout = 10.0

    def __init__(
        self,
        linkage: LinkageService,
        *,
        breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.linkage = linkage
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()

    async def process(self, context: ProcessingContext) -> ProcessingContext:
        if not context.agent_id:
            context.agent_assignment = AgentAssignmentResult(assigned=False, reason=NO_AGENT_REASON)
            return context

        identity = context.require_identity()
        agent_id = context.agent_id
        try:
            # Own deadline sits inside the executor's so a slow agent service
            # is downgraded here too.
            await asyncio.wait_for(
                call_dependency(
                    lambda: self.linkage.assign_agent(identity.account_id, context.org_id, agent_id),
                    retry_config=self.retry_config,
                    breaker=self.breaker,
                ),
                timeout=self.timeout * 0.9,
            )
        except Exception as exc:
            logger.warning(
                "agent assignment failed",
                extra={
                    "operation_id": context.operation_id,
                    "record_index": context.record_index,
                    "agent_id": agent_id,
                    "error": str(exc) or type(exc).__name__,
                },
            )
            context.agent_assignment = AgentAssignmentResult(
                assigned=False,
                agent_id=agent_id,
                reason=str(exc) or type(exc).__name__,
            )
            return context

        context.agent_assignment = AgentAssignmentResult(assigned=True, agent_id=agent_id)
        return context


def build_onboarding_pipeline(
    *,
    accounts: AccountService,
    linkage: LinkageService,
    registry: FarmerRegistry,
    metrics: MetricsTracker | None = None,
    account_breaker: CircuitBreaker | None = None,
    linkage_breaker: CircuitBreaker | None = None,
    retry_config: RetryConfig | None = None,
) -> Pipeline:
    config = retry_config or RetryConfig()
    return (
        Pipeline(metrics)
        .add_stage(ValidationStage())
        .add_stage(DeduplicationStage(registry, retry_config=config))
        .add_stage(IdentityCreationStage(accounts, breaker=account_breaker, retry_config=config))
        .add_stage(DomainRegistrationStage(registry, retry_config=config))
        .add_stage(OrganizationLinkageStage(linkage, breaker=linkage_breaker, retry_config=config))
        .add_stage(AgentAssignmentStage(linkage, breaker=linkage_breaker, retry_config=config))
    )
