import asyncio
import base64
import hashlib
import hmac
import json
from collections import defaultdict
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from esim_fulfillment.api.dependencies import get_orchestrator, get_usage_scanner
from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import ESimNotFoundException, ProviderException, StoreException
from esim_fulfillment.core.resilience import reset_circuit_breakers
from esim_fulfillment.core.security import limiter
from esim_fulfillment.main import app
from esim_fulfillment.models.esim import (
    CreatedAsset,
    CustomerProfile,
    Plan,
    ProvisionedAsset,
    ProvisioningCustomer,
)
from esim_fulfillment.models.fulfillment import VariantConfig
from esim_fulfillment.models.order import LineItem, Order
from esim_fulfillment.notifications.base import Attachment, BaseNotifier, SendResult
from esim_fulfillment.providers.base import BaseProvider
from esim_fulfillment.services.orchestrator import FulfillmentOrchestrator
from esim_fulfillment.services.usage_alerts import UsageAlertScanner
from esim_fulfillment.stores.base import (
    BaseRecordStore,
    MetafieldInput,
    OrderRecord,
    OwnerType,
    RecordOwner,
    UserError,
)

WEBHOOK_SECRET = "test-webhook-secret"
CRON_TOKEN = "test-cron-token"
OPS_EMAIL = "ops@example.com"


# ─────────────────────────────────────────────────────────────────────────────
# In-memory collaborators
# ─────────────────────────────────────────────────────────────────────────────


class InMemoryRecordStore(BaseRecordStore):
    """Metafields kept in dicts. Every call yields to the event loop once, so
    concurrent callers interleave the way they would against a remote store."""

    name = "memory"

    def __init__(self) -> None:
        self.records: dict[tuple[OwnerType, str], dict[str, str]] = defaultdict(dict)
        self.order_info: dict[str, OrderRecord] = {}
        self.variants: dict[str, VariantConfig] = {}
        self.fail_write_keys: set[str] = set()
        self.fail_read_keys: set[str] = set()
        self.search_error: Exception | None = None
        self.writes: list[tuple[RecordOwner, list[MetafieldInput]]] = []

    def order_fields(self, order_id: str) -> dict[str, str]:
        return self.records[(OwnerType.ORDER, order_id)]

    def set_variant(self, variant_id: str, plan_id: str | None, raw_action: str | None = None) -> None:
        self.variants[variant_id] = VariantConfig(plan_id=plan_id, raw_action=raw_action)

    def add_order(self, order_id: str, email: str = "buyer@example.com", **fields: str) -> None:
        """Register a searchable order with initial metafield values."""
        self.order_info[order_id] = OrderRecord(
            order_id=order_id, name=f"#{order_id}", email=email, first_name="Ada", last_name="Lovelace"
        )
        self.order_fields(order_id).update(fields)

    async def read_fields(self, owner: RecordOwner, keys: list[str]) -> dict[str, str | None]:
        await asyncio.sleep(0)
        if self.fail_read_keys.intersection(keys):
            raise StoreException(message="read failed", service=self.name)
        record = self.records[(owner.type, owner.id)]
        return {k: record.get(k) for k in keys}

    async def write_fields(self, owner: RecordOwner, fields: list[MetafieldInput]) -> list[UserError]:
        await asyncio.sleep(0)
        if self.fail_write_keys.intersection(f.key for f in fields):
            raise StoreException(message="write failed", service=self.name, upstream_code="503")
        self.writes.append((owner, fields))
        record = self.records[(owner.type, owner.id)]
        for f in fields:
            record[f.key] = f.value
        return []

    async def search_orders(self, query: str, keys: list[str]) -> list[OrderRecord]:
        await asyncio.sleep(0)
        if self.search_error is not None:
            raise self.search_error
        results = []
        for order_id, info in self.order_info.items():
            record = self.order_fields(order_id)
            if not record.get("esim_iccids"):
                continue
            results.append(info.model_copy(update={"fields": {k: record.get(k) for k in keys}}))
        return results

    async def get_variant_config(self, variant_id: str) -> VariantConfig:
        await asyncio.sleep(0)
        return self.variants.get(variant_id, VariantConfig())


class FakeProvider(BaseProvider):
    """Provisioning provider that issues sequential ICCIDs and records every call."""

    name = "fake"

    def __init__(self) -> None:
        self.customers: dict[str, list[ProvisionedAsset]] = {}
        self.plans: dict[str, list[Plan]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_create_customer = False
        self.fail_create_esim_calls: set[int] = set()  # 1-based create_esim call numbers that fail
        self.fail_top_up = False
        self.failing_plan_lookups: set[str] = set()
        self._esims = 0

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def add_asset(self, customer_id: str, asset: ProvisionedAsset) -> None:
        self.customers.setdefault(customer_id, []).append(asset)

    async def create_customer(self, profile: CustomerProfile, tag: str = "") -> str:
        await asyncio.sleep(0)
        self.calls.append(("create_customer", (profile.email, tag)))
        if self.fail_create_customer:
            raise ProviderException(message="customer rejected", service=self.name, upstream_code="400")
        customer_id = f"maya-cust-{len(self.customers) + 1}"
        self.customers[customer_id] = []
        return customer_id

    async def get_customer(self, customer_id: str) -> ProvisioningCustomer:
        await asyncio.sleep(0)
        self.calls.append(("get_customer", (customer_id,)))
        return ProvisioningCustomer(customer_id=customer_id, assets=self.customers.get(customer_id, []))

    async def create_esim(self, plan_type_id: str, customer_id: str, tag: str = "") -> CreatedAsset:
        await asyncio.sleep(0)
        self.calls.append(("create_esim", (plan_type_id, customer_id, tag)))
        if self.count("create_esim") in self.fail_create_esim_calls:
            raise ProviderException(message="out of stock", service=self.name, upstream_code="409")
        self._esims += 1
        iccid = f"8910300000000000{self._esims:03d}"
        self.add_asset(
            customer_id,
            ProvisionedAsset(
                iccid=iccid,
                asset_id=f"uid-{self._esims}",
                plans=[Plan(plan_id=f"plan-{self._esims}", plan_type_id=plan_type_id)],
            ),
        )
        return CreatedAsset(
            asset_id=f"uid-{self._esims}",
            iccid=iccid,
            activation_code=f"ACT{self._esims}",
            smdp_address="smdp.example.com",
            manual_code=f"MAN{self._esims}",
            apn="internet",
        )

    async def get_esim(self, iccid: str) -> ProvisionedAsset:
        await asyncio.sleep(0)
        for assets in self.customers.values():
            for asset in assets:
                if asset.iccid == iccid:
                    return asset
        raise ESimNotFoundException(message=f"eSIM '{iccid}' not found", service=self.name)

    async def get_esim_plans(self, iccid: str) -> list[Plan]:
        await asyncio.sleep(0)
        self.calls.append(("get_esim_plans", (iccid,)))
        if iccid in self.failing_plan_lookups:
            raise ProviderException(message="plans unavailable", service=self.name, upstream_code="500")
        return self.plans.get(iccid, [])

    async def create_top_up(self, iccid: str, plan_type_id: str, tag: str = "") -> Plan:
        await asyncio.sleep(0)
        self.calls.append(("create_top_up", (iccid, plan_type_id, tag)))
        if self.fail_top_up:
            raise ProviderException(message="top-up rejected", service=self.name, upstream_code="422")
        return Plan(plan_id=f"topup-{self.count('create_top_up')}", plan_type_id=plan_type_id)


class RecordingNotifier(BaseNotifier):
    """Keeps every message instead of sending it."""

    name = "recording"

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    def to(self, address: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["to"] == address]

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: list[Attachment] | None = None,
    ) -> SendResult:
        await asyncio.sleep(0)
        if self.fail:
            return SendResult(ok=False, error="mailbox unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return SendResult(ok=True, provider_message_id=f"msg-{len(self.sent)}")


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    """Clear circuit breakers and rate-limit counters around each test."""
    reset_circuit_breakers()
    limiter.reset()
    yield
    reset_circuit_breakers()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(
    store: InMemoryRecordStore, provider: FakeProvider, notifier: RecordingNotifier
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(store=store, provider=provider, notifier=notifier, ops_email=OPS_EMAIL)


@pytest.fixture
def scanner(
    store: InMemoryRecordStore, provider: FakeProvider, notifier: RecordingNotifier
) -> UsageAlertScanner:
    return UsageAlertScanner(store=store, provider=provider, notifier=notifier)


@pytest.fixture
def make_order() -> Callable[..., Order]:
    """Build an order; line items are `(variant_id, quantity)` pairs."""

    def _make(
        order_id: str = "1001",
        items: list[tuple[str | None, int]] | None = None,
        customer_id: str | None = "cust-1",
        email: str = "buyer@example.com",
    ) -> Order:
        line_items = [
            LineItem(line_item_id=f"li-{i}", variant_id=variant_id, quantity=quantity, title=f"Item {i}")
            for i, (variant_id, quantity) in enumerate(items if items is not None else [("v-esim", 1)])
        ]
        return Order(
            order_id=order_id,
            name=f"#{order_id}",
            email=email,
            first_name="Ada",
            last_name="Lovelace",
            country_code="FR",
            customer_id=customer_id,
            shop_domain="test-shop.myshopify.com",
            line_items=line_items,
        )

    return _make


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    orchestrator: FulfillmentOrchestrator,
    scanner: UsageAlertScanner,
) -> Generator[TestClient, None, None]:
    """Test client wired to the in-memory collaborators."""
    monkeypatch.setattr(settings, "shopify_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "cron_token", CRON_TOKEN)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_usage_scanner] = lambda: scanner
    yield TestClient(app)
    app.dependency_overrides.clear()


def sign(raw: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), raw, hashlib.sha256).digest()).decode()


def webhook_body(order_id: int = 1001, variant_id: int = 555, quantity: int = 1) -> bytes:
    """A minimal `orders/paid` body as Shopify sends it."""
    payload = {
        "id": order_id,
        "name": f"#{order_id}",
        "email": "buyer@example.com",
        "customer": {"id": 42, "first_name": "Ada", "last_name": "Lovelace"},
        "billing_address": {"country_code": "fr"},
        "line_items": [{"id": 9001, "variant_id": variant_id, "quantity": quantity, "title": "Europe 10GB"}],
    }
    return json.dumps(payload).encode()


@pytest.fixture
def signed_webhook() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Body and headers of a correctly signed `orders/paid` delivery."""

    def _build(raw: bytes | None = None, **kwargs: Any) -> tuple[bytes, dict[str, str]]:
        raw = raw if raw is not None else webhook_body(**kwargs)
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Topic": "orders/paid",
            "X-Shopify-Shop-Domain": "test-shop.myshopify.com",
            "X-Shopify-Hmac-Sha256": sign(raw),
        }
        return raw, headers

    return _build
