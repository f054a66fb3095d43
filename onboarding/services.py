"""Narrow contracts for the collaborators the onboarding stages call."""

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class Account:
    id: str
    username: str = ""
    mobile_number: str = ""


@dataclass(frozen=True)
class AccountRequest:
    username: str
    mobile_number: str
    full_name: str
    password: str
    country_code: str = "+91"
    email: str | None = None


@dataclass(frozen=True)
class FarmerRegistration:
    account_id: str
    org_id: str
    operation_id: str
    record_index: int
    first_name: str
    last_name: str
    phone_number: str
    email: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    land_ownership_type: str | None = None
    custom_fields: dict[str, object] = field(default_factory=dict)
    refresh_existing: bool = False


@dataclass(frozen=True)
class FarmerRecordRef:
    id: str
    account_id: str
    org_id: str
    phone_number: str
    created_by_operation_id: str | None = None
    source_record_index: int | None = None
    existed: bool = False


class AccountService(Protocol):
    async def lookup_account_by_phone(self, phone_number: str) -> Account | None: ...

    async def create_account(self, request: AccountRequest) -> Account: ...


class LinkageService(Protocol):
    async def link_farmer_to_org(self, account_id: str, org_id: str) -> None: ...

    async def assign_agent(self, account_id: str, org_id: str, agent_id: str) -> None: ...


class FarmerRegistry(Protocol):
    async def find_farmer(self, phone_number: str, org_id: str) -> FarmerRecordRef | None: ...

    async def create_farmer(self, request: FarmerRegistration) -> FarmerRecordRef: ...
