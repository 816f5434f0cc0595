"""Tests for the order webhook and health endpoints."""

from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient

from esim_fulfillment.config import settings

WEBHOOK_URL = "/webhooks/order-paid"


@pytest.fixture(autouse=True)
def catalog(store) -> None:
    """Variant 555 sells a new eSIM on plan `eu-10gb`."""
    store.set_variant("555", "eu-10gb", "esim")


class TestSignature:
    """Test webhook authentication."""

    def test_bad_signature_returns_401(self, client: TestClient, signed_webhook: Callable, provider) -> None:
        raw, headers = signed_webhook()
        headers["X-Shopify-Hmac-Sha256"] = "bm90LXRoZS1zaWduYXR1cmU="

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"
        assert provider.calls == []

    def test_missing_signature_returns_401(self, client: TestClient, signed_webhook: Callable) -> None:
        raw, headers = signed_webhook()
        del headers["X-Shopify-Hmac-Sha256"]

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 401

    def test_missing_secret_returns_500(
        self, client: TestClient, signed_webhook: Callable, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "shopify_webhook_secret", "")
        raw, headers = signed_webhook()

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "configuration_error"


class TestOrderPaid:
    """Test order fulfillment through the webhook."""

    def test_paid_order_is_fulfilled(
        self, client: TestClient, signed_webhook: Callable, store, provider, notifier
    ) -> None:
        raw, headers = signed_webhook()

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["status"] == "completed"
        assert data["processed"] is True
        assert data["order_id"] == "1001"
        assert data["items"][0]["units_completed"] == 1
        assert provider.count("create_esim") == 1
        assert store.order_fields("1001")["fulfillment_processed"] == "true"
        assert len(notifier.to("buyer@example.com")) == 1

    def test_replayed_delivery_is_acknowledged_without_side_effects(
        self, client: TestClient, signed_webhook: Callable, provider, notifier
    ) -> None:
        raw, headers = signed_webhook()

        first = client.post(WEBHOOK_URL, content=raw, headers=headers)
        second = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert first.json()["status"] == "completed"
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        assert provider.count("create_esim") == 1
        assert provider.count("create_customer") == 1
        assert len(notifier.sent) == 1

    def test_failed_item_is_still_acknowledged(
        self, client: TestClient, signed_webhook: Callable, store, notifier
    ) -> None:
        """Business failures are escalated and answered with 200 so the sender stops retrying."""
        store.set_variant("555", None)
        raw, headers = signed_webhook()

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is False
        assert data["status"] == "partial_failure"
        assert data["processed"] is False
        assert len(notifier.to("ops@example.com")) == 1

    def test_other_topic_is_ignored(self, client: TestClient, signed_webhook: Callable, provider) -> None:
        raw, headers = signed_webhook()
        headers["X-Shopify-Topic"] = "orders/create"

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Topic ignored"
        assert provider.calls == []

    def test_unparseable_body_is_rejected_with_200(self, client: TestClient, signed_webhook: Callable) -> None:
        raw, headers = signed_webhook(raw=b"{not json")

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_request_id_is_echoed(self, client: TestClient, signed_webhook: Callable) -> None:
        raw, headers = signed_webhook()
        headers["X-Request-ID"] = "req-123"

        response = client.post(WEBHOOK_URL, content=raw, headers=headers)

        assert response.headers["X-Request-ID"] == "req-123"


class TestHealth:
    """Test liveness endpoints."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "esim-fulfillment"}

    def test_ping(self, client: TestClient) -> None:
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.text == "pong"
