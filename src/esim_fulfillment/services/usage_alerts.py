"""Data usage alerts for recently sold eSIMs."""

from datetime import datetime, timezone

from esim_fulfillment.core.exceptions import FulfillmentException
from esim_fulfillment.core.logging import get_logger, order_context
from esim_fulfillment.models.esim import Plan
from esim_fulfillment.models.usage import (
    OrderWithAssets,
    UsageScanResult,
    percent_used,
    usage_alert_key,
)
from esim_fulfillment.notifications.base import BaseNotifier
from esim_fulfillment.notifications.templates import render_usage_alert
from esim_fulfillment.providers.base import BaseProvider
from esim_fulfillment.services.records import OrderRecordRepository
from esim_fulfillment.stores.base import BaseRecordStore

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _start_key(plan: Plan) -> datetime:
    start = plan.start_time
    if start is None:
        return _EPOCH
    return start if start.tzinfo else start.replace(tzinfo=timezone.utc)


def select_current_plan(plans: list[Plan]) -> Plan | None:
    """The plan the buyer is most likely using right now.

    Candidates are narrowed through pools, first non-empty wins: activated and
    live on the network, then activated, then plans with data left, then all.
    Within the pool the newest start time wins.
    """
    pools = (
        [p for p in plans if p.is_activated and p.is_network_active],
        [p for p in plans if p.is_activated],
        [p for p in plans if (p.remaining_bytes or 0) > 0],
        plans,
    )
    for pool in pools:
        if pool:
            return max(pool, key=_start_key)
    return None


class UsageAlertScanner:
    """Emails buyers whose eSIM data usage crossed a threshold, once per threshold and eSIM."""

    def __init__(self, store: BaseRecordStore, provider: BaseProvider, notifier: BaseNotifier):
        self.records = OrderRecordRepository(store)
        self.provider = provider
        self.notifier = notifier

    async def run(self, threshold: int, lookback_days: int) -> UsageScanResult:
        """Scan orders created within `lookback_days` and send due alerts.

        Raises:
            StoreException: the order search failed; nothing was scanned
        """
        result = UsageScanResult(threshold=threshold, lookback_days=lookback_days)
        orders = await self.records.find_orders_with_esims(lookback_days)
        logger.info("usage_scan_started", threshold=threshold, lookback_days=lookback_days, orders=len(orders))

        for order in orders:
            result.scanned += 1
            with order_context(order.order_id):
                sent = set(order.alerts_sent)
                for iccid in order.iccids:
                    result.assets_checked += 1
                    try:
                        await self._check_asset(order, iccid, threshold, sent, result)
                    except FulfillmentException as e:
                        result.errors += 1
                        logger.error("usage_check_failed", iccid=iccid, error=e.message)

        logger.info("usage_scan_completed", **result.model_dump())
        return result

    async def _check_asset(
        self,
        order: OrderWithAssets,
        iccid: str,
        threshold: int,
        sent: set[str],
        result: UsageScanResult,
    ) -> None:
        plans = await self.provider.get_esim_plans(iccid)
        plan = select_current_plan(plans)
        if plan is None:
            logger.info("usage_no_plans", iccid=iccid)
            return

        used = percent_used(plan)
        if used is None:
            logger.info("usage_quota_unknown", iccid=iccid, plan_id=plan.plan_id)
            return
        if used < threshold:
            return

        key = usage_alert_key(threshold, iccid)
        if key in sent:
            result.already_sent += 1
            return

        if not order.email:
            # Not marked, so the alert goes out once an address is known
            result.skipped_no_email += 1
            logger.warning("usage_alert_skipped_no_email", iccid=iccid, percent_used=used)
            return

        send = await self.notifier.send(
            to=order.email,
            subject=f"You have used {used}% of your eSIM data",
            html_body=render_usage_alert(
                first_name=order.first_name,
                order_name=order.name or order.order_id,
                iccid=iccid,
                percent_used=used,
                remaining_bytes=plan.remaining_bytes,
                quota_bytes=plan.quota_bytes,
            ),
        )
        if not send.ok:
            result.errors += 1
            logger.error("usage_alert_send_failed", iccid=iccid, error=send.error)
            return

        await self.records.mark_usage_alert_sent(order.order_id, key)
        sent.add(key)
        result.alerts_sent += 1
        logger.info("usage_alert_sent", iccid=iccid, percent_used=used, threshold=threshold)
