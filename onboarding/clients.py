"""httpx adapters for the account and linkage services."""

import logging
from typing import Any

import httpx

from onboarding.config import Settings
from onboarding.errors import ServiceError, TransientServiceError
from onboarding.services import Account, AccountRequest


logger = logging.getLogger(__name__)


class _ServiceClient:
    service_name = "service"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} must be used as an async context manager")
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientServiceError(f"{self.service_name} timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientServiceError(f"{self.service_name} connection error: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning(
                "dependency returned transient error",
                extra={"service": self.service_name, "status_code": status, "path": path},
            )
            raise TransientServiceError(
                f"{self.service_name} service unavailable (HTTP {status})",
                status_code=status,
            )
        if status >= 400 and status != 404:
            raise ServiceError(
                f"{self.service_name} rejected request (HTTP {status}): {response.text[:200]}",
                status_code=status,
            )
        return response


def _payload(response: httpx.Response) -> dict[str, Any]:
    body = response.json()
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body if isinstance(body, dict) else {}


class AccountServiceClient(_ServiceClient):
    service_name = "account"

    async def lookup_account_by_phone(self, phone_number: str) -> Account | None:
        response = await self._request("GET", f"/api/v1/users/mobile/{phone_number}")
        if response.status_code == 404:
            return None
        data = _payload(response)
        if not data.get("id"):
            return None
        return Account(
            id=str(data["id"]),
            username=str(data.get("username") or ""),
            mobile_number=str(data.get("mobile_number") or phone_number),
        )

    async def create_account(self, request: AccountRequest) -> Account:
        response = await self._request(
            "POST",
            "/api/v1/users",
            json={
                "username": request.username,
                "mobile_number": request.mobile_number,
                "full_name": request.full_name,
                "password": request.password,
                "country_code": request.country_code,
                "email": request.email,
            },
        )
        if response.status_code == 404:
            raise ServiceError("account service endpoint not found", status_code=404)
        data = _payload(response)
        return Account(
            id=str(data.get("id") or ""),
            username=str(data.get("username") or request.username),
            mobile_number=request.mobile_number,
        )


class LinkageServiceClient(_ServiceClient):
    service_name = "linkage"

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        response = await self._request("POST", path, json=payload)
        if response.status_code == 404:
            raise ServiceError(f"linkage target not found: {path}", status_code=404)

    async def link_farmer_to_org(self, account_id: str, org_id: str) -> None:
        await self._post(f"/api/v1/organizations/{org_id}/farmers", {"account_id": account_id})

    async def assign_agent(self, account_id: str, org_id: str, agent_id: str) -> None:
        await self._post(
            f"/api/v1/organizations/{org_id}/farmers/{account_id}/agent",
            {"agent_id": agent_id},
        )


def build_clients(settings: Settings) -> tuple[AccountServiceClient, LinkageServiceClient]:
    return (
        AccountServiceClient(settings.account_service_url, timeout=settings.service_timeout_seconds),
        LinkageServiceClient(settings.linkage_service_url, timeout=settings.service_timeout_seconds),
    )
