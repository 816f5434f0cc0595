"""Provisioning-side models: customers, eSIMs and their plans."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

# ─────────────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────────────


class AssetState(str, Enum):
    """eSIM lifecycle state, reduced to what fulfillment decisions need."""

    ACTIVE = "active"  # Released, installed or in service
    TERMINATED = "terminated"
    CANCELLED = "cancelled"


ACTIVE_NETWORK_STATUSES = {"ACTIVE", "ENABLED"}


# ─────────────────────────────────────────────────────────────────────────────
# PLAN & ESIM
# ─────────────────────────────────────────────────────────────────────────────


class Plan(BaseModel):
    """A data allowance attached to an eSIM."""

    plan_id: str = ""
    plan_type_id: str = ""  # Matches the catalog plan id configured on variants
    quota_bytes: int | None = None
    remaining_bytes: int | None = None
    activated_at: datetime | None = None  # None until the plan is first used
    start_time: datetime | None = None
    network_status: str = ""

    @property
    def is_activated(self) -> bool:
        return self.activated_at is not None

    @property
    def is_network_active(self) -> bool:
        return self.network_status.strip().upper() in ACTIVE_NETWORK_STATUSES


class ProvisionedAsset(BaseModel):
    """eSIM profile issued by the provider."""

    iccid: str
    asset_id: str | None = None  # Provider uid
    state: AssetState = AssetState.ACTIVE
    activation_code: str | None = None
    manual_code: str | None = None
    smdp_address: str | None = None
    apn: str | None = None
    plans: list[Plan] = []

    @property
    def is_usable(self) -> bool:
        return self.state not in (AssetState.TERMINATED, AssetState.CANCELLED)


class CreatedAsset(BaseModel):
    """Result of issuing a new eSIM, with the data the buyer needs to install it."""

    asset_id: str | None = None
    iccid: str
    activation_code: str | None = None
    manual_code: str | None = None
    smdp_address: str | None = None
    apn: str | None = None

    @property
    def lpa_string(self) -> str | None:
        """LPA activation string as encoded in install QR codes."""
        code = (self.activation_code or "").strip()
        if code.upper().startswith("LPA:"):
            return code
        if code and self.smdp_address:
            return f"LPA:1${self.smdp_address}${code}"
        return code or None


# ─────────────────────────────────────────────────────────────────────────────
# CUSTOMER
# ─────────────────────────────────────────────────────────────────────────────


class CustomerProfile(BaseModel):
    """Buyer profile sent when creating a provider customer."""

    email: str
    first_name: str = ""
    last_name: str = ""
    country_code: str = "US"


class ProvisioningCustomer(BaseModel):
    """Provider-side customer with the eSIMs issued to them."""

    customer_id: str
    assets: list[ProvisionedAsset] = []
