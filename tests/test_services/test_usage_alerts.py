"""Tests for the usage alert scanner."""

from datetime import datetime, timezone

import pytest

from esim_fulfillment.core.exceptions import StoreException
from esim_fulfillment.models.esim import Plan
from esim_fulfillment.models.usage import percent_used, usage_alert_key
from esim_fulfillment.services.usage_alerts import select_current_plan

ICCID = "8910300000000000555"
GB = 1_000_000_000


def plan(
    plan_id: str,
    quota: int | None = GB,
    remaining: int | None = GB,
    activated: bool = False,
    network: str = "",
    start: datetime | None = None,
) -> Plan:
    return Plan(
        plan_id=plan_id,
        plan_type_id="eu-1gb",
        quota_bytes=quota,
        remaining_bytes=remaining,
        activated_at=datetime(2024, 5, 1, tzinfo=timezone.utc) if activated else None,
        network_status=network,
        start_time=start,
    )


class TestUsageHelpers:
    """Test percentage and dedup key helpers."""

    def test_percent_used_rounds(self) -> None:
        assert percent_used(plan("p", quota=1000, remaining=250)) == 75
        assert percent_used(plan("p", quota=3, remaining=2)) == 33

    def test_percent_used_rounds_halves_up(self) -> None:
        """Test 74.5% counts as 75 so it reaches a 75% threshold."""
        assert percent_used(plan("p", quota=200, remaining=51)) == 75
        assert percent_used(plan("p", quota=200, remaining=53)) == 74
        assert percent_used(plan("p", quota=1000, remaining=995)) == 1

    def test_percent_used_without_remaining_is_zero(self) -> None:
        assert percent_used(plan("p", quota=1000, remaining=None)) == 0

    @pytest.mark.parametrize("quota", [None, 0, -5])
    def test_percent_used_without_quota(self, quota: int | None) -> None:
        assert percent_used(plan("p", quota=quota, remaining=0)) is None

    def test_usage_alert_key(self) -> None:
        assert usage_alert_key(80, ICCID) == f"usage_alert_80_{ICCID}"

    def test_usage_alert_key_requires_iccid(self) -> None:
        with pytest.raises(ValueError):
            usage_alert_key(80, "")


class TestSelectCurrentPlan:
    """Test which plan a usage check looks at."""

    def test_no_plans(self) -> None:
        assert select_current_plan([]) is None

    def test_live_activated_plan_beats_newer_inactive(self) -> None:
        plans = [
            plan("live", activated=True, network="ENABLED", start=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            plan("new", start=datetime(2024, 6, 1, tzinfo=timezone.utc)),
        ]
        assert select_current_plan(plans).plan_id == "live"

    def test_activated_pool_before_remaining_pool(self) -> None:
        plans = [plan("unused", remaining=GB), plan("used", activated=True, remaining=0)]
        assert select_current_plan(plans).plan_id == "used"

    def test_remaining_pool_before_all(self) -> None:
        plans = [plan("empty", remaining=0), plan("left", remaining=10)]
        assert select_current_plan(plans).plan_id == "left"

    def test_newest_start_wins_within_pool(self) -> None:
        plans = [
            plan("old", activated=True, start=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            plan("new", activated=True, start=datetime(2024, 3, 1, tzinfo=timezone.utc)),
            plan("unknown", activated=True, start=None),
        ]
        assert select_current_plan(plans).plan_id == "new"


class TestUsageAlertScanner:
    """Test scan passes over recent orders."""

    @pytest.fixture(autouse=True)
    def order_with_esim(self, store, provider) -> None:
        store.add_order("2001", esim_iccids=ICCID)
        provider.plans[ICCID] = [plan("p1", remaining=GB // 4, activated=True, network="ACTIVE")]

    @pytest.mark.asyncio
    async def test_alert_fires_once_at_threshold(self, scanner, store, notifier) -> None:
        """Test 75% usage at threshold 70 sends one email across two passes."""
        first = await scanner.run(threshold=70, lookback_days=30)
        second = await scanner.run(threshold=70, lookback_days=30)

        assert first.scanned == 1
        assert first.assets_checked == 1
        assert first.alerts_sent == 1
        assert second.alerts_sent == 0
        assert second.already_sent == 1
        assert len(notifier.to("buyer@example.com")) == 1
        assert "75%" in notifier.sent[0]["subject"]
        assert store.order_fields("2001")["usage_alerts_sent"] == f"usage_alert_70_{ICCID}"

    @pytest.mark.asyncio
    async def test_below_threshold_sends_nothing(self, scanner, notifier) -> None:
        result = await scanner.run(threshold=80, lookback_days=30)

        assert result.alerts_sent == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_each_threshold_alerts_separately(self, scanner, store, notifier) -> None:
        await scanner.run(threshold=50, lookback_days=30)
        await scanner.run(threshold=70, lookback_days=30)

        assert len(notifier.sent) == 2
        assert store.order_fields("2001")["usage_alerts_sent"].split("\n") == [
            f"usage_alert_50_{ICCID}",
            f"usage_alert_70_{ICCID}",
        ]

    @pytest.mark.asyncio
    async def test_missing_email_is_skipped_without_marking(self, scanner, store, notifier) -> None:
        store.order_info["2001"] = store.order_info["2001"].model_copy(update={"email": ""})

        result = await scanner.run(threshold=70, lookback_days=30)

        assert result.skipped_no_email == 1
        assert result.alerts_sent == 0
        assert notifier.sent == []
        assert "usage_alerts_sent" not in store.order_fields("2001")

    @pytest.mark.asyncio
    async def test_failed_send_is_not_marked(self, scanner, store, notifier) -> None:
        notifier.fail = True

        result = await scanner.run(threshold=70, lookback_days=30)

        assert result.errors == 1
        assert "usage_alerts_sent" not in store.order_fields("2001")

    @pytest.mark.asyncio
    async def test_asset_fault_does_not_abort_scan(self, scanner, store, provider, notifier) -> None:
        other = "8910300000000000556"
        store.add_order("2002", esim_iccids=f"BROKEN\n{other}")
        provider.plans[other] = provider.plans[ICCID]
        provider.failing_plan_lookups.add("BROKEN")

        result = await scanner.run(threshold=70, lookback_days=30)

        assert result.scanned == 2
        assert result.assets_checked == 3
        assert result.errors == 1
        assert result.alerts_sent == 2

    @pytest.mark.asyncio
    async def test_unknown_quota_is_skipped(self, scanner, provider, notifier) -> None:
        provider.plans[ICCID] = [plan("p1", quota=None, remaining=None, activated=True)]

        result = await scanner.run(threshold=70, lookback_days=30)

        assert result.alerts_sent == 0
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_search_failure_fails_the_scan(self, scanner, store) -> None:
        store.search_error = StoreException(message="search unavailable", service="memory")

        with pytest.raises(StoreException):
            await scanner.run(threshold=70, lookback_days=30)
