import asyncio
import time

import pytest

from onboarding.circuit_breaker import CircuitBreaker, CircuitState
from onboarding.context import DedupMode, IdentityResult, ProcessingContext, RegistrationResult
from onboarding.credentials import DIGITS, LOWERCASE, SPECIAL, UPPERCASE, fallback_password, generate_password
from onboarding.errors import DuplicateFarmer, ServiceError, StageOrderingError, ValidationFailed
from onboarding.farmer_store import DatabaseFarmerRegistry, get_farmer_by_phone
from onboarding.pipeline import Pipeline, PipelineError
from onboarding.retry import NonRetryableError, RetryConfig, RetryExhaustedError
from onboarding.services import Account, FarmerRegistration
from onboarding.stages import (
    AgentAssignmentStage,
    DeduplicationStage,
    DomainRegistrationStage,
    IdentityCreationStage,
    OrganizationLinkageStage,
    ValidationStage,
    build_onboarding_pipeline,
)


FAST = RetryConfig(max_attempts=3, initial_delay=0, max_delay=0, jitter=False)


def _context(record, *, operation_id: str = "bulk_a", index: int = 0, **kwargs) -> ProcessingContext:
    return ProcessingContext(
        operation_id=operation_id,
        org_id="org-1",
        user_id="user-1",
        record_index=index,
        record=record,
        **kwargs,
    )


def _registration(phone: str, *, operation_id: str = "bulk_other", index: int = 0) -> FarmerRegistration:
    return FarmerRegistration(
        account_id="acct-existing",
        org_id="org-1",
        operation_id=operation_id,
        record_index=index,
        first_name="Old",
        last_name="Name",
        phone_number=phone,
    )


def test_validation_accepts_well_formed_record(make_record) -> None:
    context = asyncio.run(ValidationStage().process(_context(make_record(phone="98765-43210"))))
    assert context.validation.phone_number == "9876543210"


@pytest.mark.parametrize(
    ("fields", "code", "fragment"),
    [
        ({"first_name": ""}, "MISSING_FIELDS", "first_name"),
        ({"phone": "987654321"}, "INVALID_FORMAT", "phone number format"),
        ({"phone": "5876543210"}, "INVALID_FORMAT", "phone number format"),
        ({"email": "not-an-email"}, "INVALID_FORMAT", "email"),
        ({"gender": "unknown"}, "INVALID_FORMAT", "gender"),
    ],
)
def test_validation_rejects_bad_fields(make_record, fields, code, fragment) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        asyncio.run(ValidationStage().process(_context(make_record(**fields))))

    assert exc_info.value.code == code
    assert fragment in exc_info.value.message
    assert exc_info.value.retryable is False


def test_validation_accepts_short_gender_codes(make_record) -> None:
    asyncio.run(ValidationStage().process(_context(make_record(gender="F"))))


def test_dedup_without_match_continues(session_factory, make_record) -> None:
    stage = DeduplicationStage(DatabaseFarmerRegistry(session_factory), retry_config=FAST)
    context = asyncio.run(stage.process(_context(make_record())))

    assert context.deduplication.is_duplicate is False
    assert not context.skipped


def test_dedup_modes(session_factory, make_record) -> None:
    registry = DatabaseFarmerRegistry(session_factory)
    existing = asyncio.run(registry.create_farmer(_registration("9876543210")))
    stage = DeduplicationStage(registry, retry_config=FAST)

    skipped = asyncio.run(stage.process(_context(make_record())))
    assert skipped.skip_reason == "duplicate farmer: phone number already registered"
    assert skipped.deduplication.existing_farmer_id == existing.id

    updated = asyncio.run(stage.process(_context(make_record(), dedup_mode=DedupMode.UPDATE)))
    assert not updated.skipped
    assert updated.deduplication.is_duplicate is True

    with pytest.raises(DuplicateFarmer) as exc_info:
        asyncio.run(stage.process(_context(make_record(), dedup_mode=DedupMode.ERROR)))
    assert exc_info.value.retryable is False


def test_dedup_treats_own_earlier_write_as_resume(session_factory, make_record) -> None:
    registry = DatabaseFarmerRegistry(session_factory)
    asyncio.run(registry.create_farmer(_registration("9876543210", operation_id="bulk_a", index=4)))
    stage = DeduplicationStage(registry, retry_config=FAST)

    resumed = asyncio.run(stage.process(_context(make_record(), operation_id="bulk_a", index=4)))
    assert resumed.deduplication.resumed is True
    assert not resumed.skipped

    # Same operation, different record: an in-batch duplicate.
    other = asyncio.run(stage.process(_context(make_record(), operation_id="bulk_a", index=5)))
    assert other.skipped


def test_identity_creation_reuses_existing_account(accounts, make_record) -> None:
    stage = IdentityCreationStage(accounts, retry_config=FAST)

    first = asyncio.run(stage.process(_context(make_record())))
    second = asyncio.run(stage.process(_context(make_record())))

    assert first.identity.user_existed is False
    assert second.identity.user_existed is True
    assert second.identity.account_id == first.identity.account_id
    assert accounts.create_calls == 1


def test_identity_creation_builds_account_request(accounts, make_record) -> None:
    stage = IdentityCreationStage(accounts, retry_config=FAST)
    asyncio.run(stage.process(_context(make_record(email="ramesh@example.com"))))

    request = accounts.created[0]
    assert request.username == "farmer_9876543210"
    assert request.country_code == "+91"
    assert request.full_name == "Ramesh Patel"
    assert len(request.password) == 16


def test_identity_creation_keeps_supplied_password(accounts, make_record) -> None:
    stage = IdentityCreationStage(accounts, retry_config=FAST)
    asyncio.run(stage.process(_context(make_record(password="Given@123"))))
    assert accounts.created[0].password == "Given@123"


def test_identity_creation_rejects_response_without_id(make_record) -> None:
    class NoIdAccounts:
        async def lookup_account_by_phone(self, phone_number):
            return None

        async def create_account(self, request):
            return Account(id="")

    stage = IdentityCreationStage(NoIdAccounts(), retry_config=FAST)
    with pytest.raises(NonRetryableError) as exc_info:
        asyncio.run(stage.process(_context(make_record())))
    assert isinstance(exc_info.value.__cause__, ServiceError)


def test_breaker_counts_one_failure_per_exhausted_retry_loop(accounts, make_record) -> None:
    breaker = CircuitBreaker("account_service", max_failures=2, reset_timeout=60)
    stage = IdentityCreationStage(accounts, breaker=breaker, retry_config=FAST)
    accounts.fail_next_creates(3)

    with pytest.raises(RetryExhaustedError):
        asyncio.run(stage.process(_context(make_record())))

    assert accounts.create_calls == 3
    assert breaker.failure_count == 1
    assert breaker.state is CircuitState.CLOSED


def test_registration_requires_identity(session_factory, make_record) -> None:
    stage = DomainRegistrationStage(DatabaseFarmerRegistry(session_factory), retry_config=FAST)
    with pytest.raises(StageOrderingError):
        asyncio.run(stage.process(_context(make_record())))


def test_registration_is_get_or_create(session_factory, make_record) -> None:
    stage = DomainRegistrationStage(DatabaseFarmerRegistry(session_factory), retry_config=FAST)
    identity = IdentityResult(account_id="acct-1", username="farmer_9876543210", user_existed=False)

    first = asyncio.run(stage.process(_context(make_record(), identity=identity)))
    second = asyncio.run(stage.process(_context(make_record(), identity=identity)))

    assert first.registration.existed is False
    assert second.registration.farmer_id == first.registration.farmer_id
    assert second.registration.existed is True


def test_update_mode_refreshes_existing_profile(session_factory, make_record) -> None:
    registry = DatabaseFarmerRegistry(session_factory)
    asyncio.run(registry.create_farmer(_registration("9876543210")))
    stage = DomainRegistrationStage(registry, retry_config=FAST)
    identity = IdentityResult(account_id="acct-1", username="farmer_9876543210", user_existed=True)

    asyncio.run(
        stage.process(
            _context(make_record(first_name="Suresh", city="Ratlam"), identity=identity, dedup_mode=DedupMode.UPDATE)
        )
    )

    with session_factory() as db:
        farmer = get_farmer_by_phone(db, "9876543210", "org-1")
        assert farmer.first_name == "Suresh"
        assert farmer.city == "Ratlam"


def test_registration_skips_record_that_lost_the_race(session_factory, make_record) -> None:
    registry = DatabaseFarmerRegistry(session_factory)
    winner = asyncio.run(registry.create_farmer(_registration("9876543210", operation_id="bulk_a", index=0)))
    stage = DomainRegistrationStage(registry, retry_config=FAST)
    identity = IdentityResult(account_id="acct-1", username="farmer_9876543210", user_existed=True)

    context = asyncio.run(stage.process(_context(make_record(), operation_id="bulk_a", index=1, identity=identity)))

    assert context.skipped
    assert context.registration is None
    assert context.deduplication.existing_farmer_id == winner.id

    with pytest.raises(DuplicateFarmer) as exc_info:
        asyncio.run(
            stage.process(
                _context(make_record(), operation_id="bulk_a", index=2, identity=identity, dedup_mode=DedupMode.ERROR)
            )
        )
    assert exc_info.value.existing_farmer_id == winner.id


def test_registration_stores_land_ownership_type(session_factory, make_record) -> None:
    stage = DomainRegistrationStage(DatabaseFarmerRegistry(session_factory), retry_config=FAST)
    identity = IdentityResult(account_id="acct-1", username="farmer_9876543210", user_existed=False)

    asyncio.run(stage.process(_context(make_record(land_ownership_type="leased"), identity=identity)))

    with session_factory() as db:
        assert get_farmer_by_phone(db, "9876543210", "org-1").land_ownership_type == "leased"


def test_slow_registry_lookup_hits_stage_deadline(session_factory, make_record, monkeypatch) -> None:
    def slow_lookup(db, phone_number, org_id):
        time.sleep(0.5)
        return None

    monkeypatch.setattr("onboarding.farmer_store.get_farmer_by_phone", slow_lookup)
    stage = DeduplicationStage(DatabaseFarmerRegistry(session_factory), retry_config=FAST)
    stage.timeout = 0.05

    with pytest.raises(PipelineError) as exc_info:
        asyncio.run(Pipeline().add_stage(stage).execute(_context(make_record())))

    assert exc_info.value.code == "STAGE_TIMEOUT"
    assert exc_info.value.retryable is True


def test_linkage_requires_registration(linkage, make_record) -> None:
    identity = IdentityResult(account_id="acct-1", username="u", user_existed=False)
    stage = OrganizationLinkageStage(linkage, retry_config=FAST)

    with pytest.raises(StageOrderingError):
        asyncio.run(stage.process(_context(make_record(), identity=identity)))

    context = _context(make_record(), identity=identity, registration=RegistrationResult(farmer_id="FMR1"))
    context = asyncio.run(stage.process(context))
    assert context.linkage.link_status == "ACTIVE"
    assert linkage.links == [("acct-1", "org-1")]


def test_agent_assignment_without_agent_is_skipped(linkage, make_record) -> None:
    context = asyncio.run(AgentAssignmentStage(linkage, retry_config=FAST).process(_context(make_record())))

    assert context.agent_assignment.assigned is False
    assert context.agent_assignment.reason == "no agent specified"
    assert linkage.assignments == []


def test_agent_assignment_failure_is_downgraded(linkage, make_record, caplog) -> None:
    linkage.agent_error = ServiceError("agent not found", status_code=404)
    identity = IdentityResult(account_id="acct-1", username="u", user_existed=False)
    context = _context(make_record(), identity=identity, agent_id="agent-7")

    with caplog.at_level("WARNING"):
        context = asyncio.run(AgentAssignmentStage(linkage, retry_config=FAST).process(context))

    assert context.agent_assignment.assigned is False
    assert "agent not found" in context.agent_assignment.reason
    assert "agent assignment failed" in caplog.text


def test_agent_assignment_success(linkage, make_record) -> None:
    identity = IdentityResult(account_id="acct-1", username="u", user_existed=False)
    context = _context(make_record(), identity=identity, agent_id="agent-7")

    context = asyncio.run(AgentAssignmentStage(linkage, retry_config=FAST).process(context))

    assert context.agent_assignment.assigned is True
    assert linkage.assignments == [("acct-1", "org-1", "agent-7")]


def test_pipeline_has_fixed_stage_order(accounts, linkage, session_factory) -> None:
    pipeline = build_onboarding_pipeline(
        accounts=accounts,
        linkage=linkage,
        registry=DatabaseFarmerRegistry(session_factory),
    )
    assert [stage.name for stage in pipeline.stages] == [
        "validation",
        "deduplication",
        "identity_creation",
        "domain_registration",
        "organization_linkage",
        "agent_assignment",
    ]
    assert [stage.timeout for stage in pipeline.stages] == [30.0, 10.0, 30.0, 20.0, 15.0, 10.0]
    assert pipeline.stages[0].can_retry is False


def test_generated_password_has_two_of_each_class() -> None:
    password = generate_password()

    assert len(password) == 16
    for pool in (UPPERCASE, LOWERCASE, DIGITS, SPECIAL):
        assert sum(char in pool for char in password) >= 2


def test_fallback_password_pattern() -> None:
    assert fallback_password("ramesh", "9876543210", clock=lambda: 1_700_012_345) == "RAM3210!2345"
