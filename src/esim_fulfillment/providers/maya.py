"""Maya Connectivity provider implementation."""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError

from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import (
    ConfigurationException,
    ESimNotFoundException,
    ProviderException,
)
from esim_fulfillment.core.http import HTTPClient
from esim_fulfillment.core.utils import map_status, parse_datetime, parse_int
from esim_fulfillment.models.esim import (
    AssetState,
    CreatedAsset,
    CustomerProfile,
    Plan,
    ProvisionedAsset,
    ProvisioningCustomer,
)
from esim_fulfillment.providers.base import BaseProvider

# Status mappings - provider values to unified enums
ASSET_STATE_MAP: dict[str, AssetState] = {
    "RELEASED": AssetState.ACTIVE,
    "INSTALLED": AssetState.ACTIVE,
    "ENABLED": AssetState.ACTIVE,
    "ACTIVE": AssetState.ACTIVE,
    "TERMINATED": AssetState.TERMINATED,
    "DELETED": AssetState.TERMINATED,
    "CANCELLED": AssetState.CANCELLED,
    "CANCELED": AssetState.CANCELLED,
}


def _optional_str(value: Any) -> str | None:
    """Maya returns some identifiers as numbers; normalize them to strings."""
    if value is None or value == "":
        return None
    return str(value)


class MayaProvider(BaseProvider):
    """Maya Connectivity API (`/connectivity/v1`)."""

    name = "maya"

    def __init__(self, auth: str, base_url: str | None = None):
        if not auth:
            raise ConfigurationException("Missing MAYA_AUTH")
        self.base_url = (base_url or settings.maya_base_url).strip()
        self._client = HTTPClient(
            base_url=f"{self.base_url}/connectivity/v1",
            service=self.name,
            headers={
                "Authorization": f"Basic {auth}",
                "Accept": "application/json",
            },
            error_class=ProviderException,
        )

    async def close(self) -> None:
        await self._client.close()

    @contextmanager
    def _parsing(self, what: str, response: Any) -> Iterator[None]:
        """Raise malformed payloads as provider errors."""
        try:
            yield
        except (ValidationError, AttributeError, TypeError) as e:
            raise ProviderException(
                message=f"Unexpected {what} payload from {self.name}",
                service=self.name,
                upstream_message=str(response),
            ) from e

    # ─────────────────────────────────────────────────────────────────────────
    # CUSTOMERS
    # ─────────────────────────────────────────────────────────────────────────

    async def create_customer(self, profile: CustomerProfile, tag: str = "") -> str:
        """Create a customer; Maya returns its id under a few different shapes."""
        body: dict[str, Any] = {
            "email": profile.email,
            "first_name": profile.first_name or "",
            "last_name": profile.last_name or "",
            "country": profile.country_code or settings.default_country_code,
        }
        if tag:
            body["tag"] = tag

        response = await self._client.post("/customer/", json=body)

        with self._parsing("customer", response):
            customer = response.get("customer") or {}
            customer_id = _optional_str(customer.get("id") or customer.get("uid") or response.get("id"))
        if not customer_id:
            raise ProviderException(
                message="Customer created but no customer id returned",
                service=self.name,
                upstream_message=str(response),
            )
        return customer_id

    async def get_customer(self, customer_id: str) -> ProvisioningCustomer:
        response = await self._client.get(f"/customer/{quote(customer_id, safe='')}")
        with self._parsing("customer", response):
            customer = response.get("customer", response)
            return ProvisioningCustomer(
                customer_id=_optional_str(customer.get("id") or customer.get("uid")) or customer_id,
                assets=[self._parse_esim(e) for e in customer.get("esims") or [] if e],
            )

    # ─────────────────────────────────────────────────────────────────────────
    # ESIMS
    # ─────────────────────────────────────────────────────────────────────────

    async def create_esim(self, plan_type_id: str, customer_id: str, tag: str = "") -> CreatedAsset:
        body: dict[str, Any] = {"plan_type_id": plan_type_id, "customer_id": customer_id}
        if tag:
            body["tag"] = tag

        response = await self._client.post("/esim", json=body)

        with self._parsing("eSIM", response):
            esim = response.get("esim") or {}
            iccid = str(esim.get("iccid") or "").strip()
            if not iccid:
                raise ProviderException(
                    message="eSIM created but no ICCID returned",
                    service=self.name,
                    upstream_message=str(response),
                )
            return CreatedAsset(
                asset_id=_optional_str(esim.get("uid") or esim.get("id")),
                iccid=iccid,
                activation_code=_optional_str(esim.get("activation_code")),
                manual_code=_optional_str(esim.get("manual_code")),
                smdp_address=_optional_str(esim.get("smdp_address")),
                apn=_optional_str(esim.get("apn")),
            )

    async def get_esim(self, iccid: str) -> ProvisionedAsset:
        """Get eSIM details by ICCID."""
        iccid = iccid.strip()
        if not iccid:
            raise ValueError("get_esim: missing iccid")
        try:
            response = await self._client.get(f"/esim/{quote(iccid, safe='')}")
        except ProviderException as e:
            if e.upstream_code == "404":
                raise ESimNotFoundException(
                    message=f"eSIM '{iccid}' not found",
                    service=self.name,
                    upstream_code=e.upstream_code,
                ) from e
            raise

        with self._parsing("eSIM", response):
            esim = response.get("esim")
            if not esim:
                raise ESimNotFoundException(message=f"eSIM '{iccid}' not found", service=self.name)
            return self._parse_esim(esim)

    async def get_esim_plans(self, iccid: str) -> list[Plan]:
        response = await self._client.get(f"/esim/{quote(iccid.strip(), safe='')}/plans")
        with self._parsing("plans", response):
            return [self._parse_plan(p) for p in response.get("plans") or [] if p]

    async def create_top_up(self, iccid: str, plan_type_id: str, tag: str = "") -> Plan:
        path = f"/esim/{quote(iccid.strip(), safe='')}/plan/{quote(plan_type_id.strip(), safe='')}"
        response = await self._client.post(path, json={"tag": tag} if tag else {})
        with self._parsing("top-up", response):
            return self._parse_plan(response.get("plan") or {})

    # ─────────────────────────────────────────────────────────────────────────
    # PARSING
    # ─────────────────────────────────────────────────────────────────────────

    def _parse_esim(self, data: dict[str, Any]) -> ProvisionedAsset:
        """Parse eSIM from API response."""
        return ProvisionedAsset(
            iccid=str(data.get("iccid") or ""),
            asset_id=_optional_str(data.get("uid") or data.get("id")),
            state=map_status(data.get("state"), ASSET_STATE_MAP, AssetState.ACTIVE),
            activation_code=_optional_str(data.get("activation_code")),
            manual_code=_optional_str(data.get("manual_code")),
            smdp_address=_optional_str(data.get("smdp_address")),
            apn=_optional_str(data.get("apn")),
            plans=[self._parse_plan(p) for p in data.get("plans") or [] if p],
        )

    def _parse_plan(self, data: dict[str, Any]) -> Plan:
        """Parse plan from API response."""
        plan_type = data.get("plan_type") or {}
        plan_type_id = plan_type.get("id") if isinstance(plan_type, dict) else plan_type
        return Plan(
            plan_id=str(data.get("id") or ""),
            plan_type_id=str(plan_type_id or data.get("plan_type_id") or ""),
            quota_bytes=parse_int(data.get("data_quota_bytes")),
            remaining_bytes=parse_int(data.get("data_bytes_remaining")),
            activated_at=parse_datetime(data.get("date_activated")),
            start_time=parse_datetime(data.get("start_time") or data.get("date_created")),
            network_status=str(data.get("network_status") or ""),
        )
