from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from onboarding.bulk_service import BulkOnboardingService
from onboarding.config import Settings
from onboarding.database import build_session_factory
from onboarding.errors import TransientServiceError
from onboarding.metrics import MetricsTracker
from onboarding.records import FarmerRecord
from onboarding.services import Account, AccountRequest


class FakeAccountService:
    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.lookup_calls = 0
        self.create_calls = 0
        self.create_failures: list[Exception] = []
        self.created: list[AccountRequest] = []

    def fail_next_creates(self, count: int, error: Callable[[], Exception] | None = None) -> None:
        factory = error or (lambda: TransientServiceError("account service unavailable (HTTP 503)", status_code=503))
        self.create_failures.extend(factory() for _ in range(count))

    async def lookup_account_by_phone(self, phone_number: str) -> Account | None:
        self.lookup_calls += 1
        return self.accounts.get(phone_number)

    async def create_account(self, request: AccountRequest) -> Account:
        self.create_calls += 1
        if self.create_failures:
            raise self.create_failures.pop(0)
        account = Account(id=f"acct-{len(self.accounts) + 1}", username=request.username, mobile_number=request.mobile_number)
        self.accounts[request.mobile_number] = account
        self.created.append(request)
        return account


class FakeLinkageService:
    def __init__(self) -> None:
        self.links: list[tuple[str, str]] = []
        self.assignments: list[tuple[str, str, str]] = []
        self.link_error: Exception | None = None
        self.agent_error: Exception | None = None

    async def link_farmer_to_org(self, account_id: str, org_id: str) -> None:
        if self.link_error is not None:
            raise self.link_error
        self.links.append((account_id, org_id))

    async def assign_agent(self, account_id: str, org_id: str, agent_id: str) -> None:
        if self.agent_error is not None:
            raise self.agent_error
        self.assignments.append((account_id, org_id, agent_id))


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="farmer-onboarding",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        max_concurrency=4,
        max_record_retries=3,
        max_records=100,
        retry_max_attempts=3,
        retry_initial_delay_seconds=0,
        retry_max_delay_seconds=0,
        retry_backoff_factor=2.0,
        retry_jitter=False,
        breaker_max_failures=5,
        breaker_reset_timeout_seconds=30,
        account_service_url="http://accounts.test",
        linkage_service_url="http://linkage.test",
        service_timeout_seconds=1,
        stale_operation_minutes=30,
        sweep_interval_minutes=5,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def accounts() -> FakeAccountService:
    return FakeAccountService()


@pytest.fixture()
def linkage() -> FakeLinkageService:
    return FakeLinkageService()


@pytest.fixture()
def metrics() -> MetricsTracker:
    return MetricsTracker()


@pytest.fixture()
def service(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    accounts: FakeAccountService,
    linkage: FakeLinkageService,
    metrics: MetricsTracker,
) -> BulkOnboardingService:
    return BulkOnboardingService(
        test_settings,
        session_factory,
        accounts=accounts,
        linkage=linkage,
        metrics=metrics,
    )


@pytest.fixture()
def make_record() -> Callable[..., FarmerRecord]:
    def _make(phone: str = "9876543210", first_name: str = "Ramesh", last_name: str = "Patel", **fields) -> FarmerRecord:
        return FarmerRecord(first_name=first_name, last_name=last_name, phone_number=phone, **fields)

    return _make
