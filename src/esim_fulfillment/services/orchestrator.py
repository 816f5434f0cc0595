"""Order fulfillment orchestration.

One call to `FulfillmentOrchestrator.process()` handles one delivery of an
`orders/paid` event end to end:

    received -> idempotency-checked -> (skipped | locked) -> customer-resolved
             -> items-processing -> outcome-decided
             -> (marked-processed | left-unprocessed)

Step failures are folded into `ItemOutcome` values; only a fully successful
run marks the order processed, so a partially failed order is retried by the
next delivery. Units recorded as fulfilled by an earlier delivery are skipped.
"""

from esim_fulfillment.core.exceptions import FulfillmentException
from esim_fulfillment.core.logging import get_logger, order_context
from esim_fulfillment.models.esim import CreatedAsset, ProvisionedAsset
from esim_fulfillment.models.fulfillment import (
    ActionKind,
    FulfillmentResult,
    FulfillmentStatus,
    ItemOutcome,
)
from esim_fulfillment.models.order import LineItem, Order
from esim_fulfillment.notifications.base import BaseNotifier
from esim_fulfillment.notifications.templates import (
    render_esim_delivery,
    render_top_up_confirmation,
)
from esim_fulfillment.providers.base import BaseProvider
from esim_fulfillment.services.customers import CustomerResolver
from esim_fulfillment.services.escalation import EscalationKind, Escalator
from esim_fulfillment.services.line_items import LineItemResolver
from esim_fulfillment.services.lock import ProcessingLock
from esim_fulfillment.services.records import OrderRecordRepository
from esim_fulfillment.services.topup import select_top_up_target
from esim_fulfillment.stores.base import BaseRecordStore

logger = get_logger(__name__)


class FulfillmentOrchestrator:
    """Turns a paid order into provisioned eSIMs and top-ups."""

    def __init__(
        self,
        store: BaseRecordStore,
        provider: BaseProvider,
        notifier: BaseNotifier,
        ops_email: str = "",
        lock: ProcessingLock | None = None,
    ):
        self.records = OrderRecordRepository(store)
        self.provider = provider
        self.notifier = notifier
        self.lock = lock or ProcessingLock(self.records)
        self.customers = CustomerResolver(self.records, provider)
        self.line_items = LineItemResolver(store)
        self.escalator = Escalator(notifier, ops_email)

    async def process(self, order: Order) -> FulfillmentResult:
        if not order.order_id:
            logger.warning("order_rejected_missing_id", shop=order.shop_domain)
            return FulfillmentResult(
                status=FulfillmentStatus.REJECTED,
                error="Order event has no order id",
            )

        with order_context(order.order_id, order.shop_domain):
            return await self._process(order)

    async def _process(self, order: Order) -> FulfillmentResult:
        order_id = order.order_id

        try:
            if await self.records.is_processed(order_id):
                logger.info("order_already_processed")
                return FulfillmentResult(
                    order_id=order_id,
                    status=FulfillmentStatus.ALREADY_PROCESSED,
                    processed=True,
                )
        except FulfillmentException as e:
            logger.error("processed_flag_read_failed", error=e.message)
            return FulfillmentResult(
                order_id=order_id, status=FulfillmentStatus.FAILED, error=e.message
            )

        try:
            acquired = await self.lock.try_acquire(order_id)
        except FulfillmentException as e:
            logger.error("lock_acquire_failed", error=e.message)
            return FulfillmentResult(
                order_id=order_id,
                status=FulfillmentStatus.FAILED,
                error=e.message,
                lock_reason="lock_error",
            )

        if not acquired.acquired:
            return FulfillmentResult(
                order_id=order_id,
                status=FulfillmentStatus.LOCKED,
                lock_reason=acquired.reason,
            )

        try:
            return await self._process_locked(order)
        finally:
            try:
                await self.lock.release(order_id, acquired.token or "")
            except FulfillmentException as e:
                logger.error("lock_release_failed", error=e.message)

    async def _process_locked(self, order: Order) -> FulfillmentResult:
        order_id = order.order_id

        # Another delivery may have finished between our check and the lock
        try:
            if await self.records.is_processed(order_id):
                logger.info("order_processed_while_waiting_for_lock")
                return FulfillmentResult(
                    order_id=order_id,
                    status=FulfillmentStatus.ALREADY_PROCESSED,
                    processed=True,
                )
            fulfilled_units = await self.records.get_fulfilled_units(order_id)
        except FulfillmentException as e:
            logger.error("order_state_read_failed", error=e.message)
            return FulfillmentResult(
                order_id=order_id, status=FulfillmentStatus.FAILED, error=e.message
            )

        try:
            customer_id = await self.customers.resolve(
                customer_id=order.customer_id,
                email=order.email,
                first_name=order.first_name,
                last_name=order.last_name,
                country_code=order.country_code,
                trace_tag=order.trace_tag,
            )
        except FulfillmentException as e:
            await self.escalator.escalate(
                EscalationKind.CUSTOMER_RESOLUTION_FAILED,
                order,
                "Could not resolve a provisioning customer; nothing was fulfilled.",
                error=e.message,
                upstream_code=getattr(e, "upstream_code", None),
                upstream_message=getattr(e, "upstream_message", None),
            )
            return FulfillmentResult(
                order_id=order_id, status=FulfillmentStatus.FAILED, error=e.message
            )

        logger.info(
            "fulfillment_started",
            customer_id=customer_id,
            line_items=len(order.line_items),
            units_already_fulfilled=len(fulfilled_units),
        )

        items = [
            await self._process_item(order, item, customer_id, fulfilled_units)
            for item in order.line_items
        ]
        result = FulfillmentResult(
            order_id=order_id,
            status=FulfillmentStatus.COMPLETED,
            customer_id=customer_id,
            items=items,
        )

        if result.partial_failure:
            result.status = FulfillmentStatus.PARTIAL_FAILURE
            logger.warning(
                "order_left_unprocessed",
                failed_items=[i.line_item_id for i in items if i.failed],
            )
            return result

        try:
            await self.records.mark_processed(order_id)
        except FulfillmentException as e:
            await self.escalator.escalate(
                EscalationKind.MARK_PROCESSED_FAILED,
                order,
                "All items were fulfilled but the processed flag could not be written. "
                "A replay will skip completed units; verify the order manually.",
                error=e.message,
                iccids=[iccid for i in items for iccid in i.iccids],
            )
            result.status = FulfillmentStatus.FAILED
            result.error = e.message
            return result

        result.processed = True
        logger.info("order_marked_processed", items=len(items))
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # LINE ITEMS
    # ─────────────────────────────────────────────────────────────────────────

    async def _process_item(
        self,
        order: Order,
        item: LineItem,
        customer_id: str,
        fulfilled_units: set[str],
    ) -> ItemOutcome:
        outcome = ItemOutcome(line_item_id=item.line_item_id, variant_id=item.variant_id)

        pending = [i for i in range(item.quantity) if item.unit_key(i) not in fulfilled_units]
        outcome.units_skipped = item.quantity - len(pending)
        if not pending:
            logger.info("line_item_already_fulfilled", line_item_id=item.line_item_id)
            return outcome

        resolution = await self.line_items.resolve(item)
        outcome.plan_id = resolution.plan_id
        outcome.action = resolution.action
        if not resolution.ok:
            error = resolution.error or "Line item could not be resolved"
            outcome.fail(error, units=len(pending))
            await self.escalator.escalate(
                EscalationKind.LINE_ITEM_UNRESOLVED,
                order,
                "A purchased variant has no usable plan mapping.",
                line_item_id=item.line_item_id,
                variant_id=item.variant_id,
                title=item.title,
                plan_id=resolution.plan_id,
                error=error,
            )
            return outcome

        if resolution.action == ActionKind.TOP_UP:
            await self._top_up(order, item, customer_id, pending, outcome)
        else:
            await self._provision(order, item, customer_id, pending, outcome)
        return outcome

    async def _provision(
        self,
        order: Order,
        item: LineItem,
        customer_id: str,
        pending: list[int],
        outcome: ItemOutcome,
    ) -> None:
        plan_id = outcome.plan_id or ""
        for unit in pending:
            unit_key = item.unit_key(unit)
            try:
                asset = await self.provider.create_esim(plan_id, customer_id, tag=order.trace_tag)
            except FulfillmentException as e:
                outcome.fail(f"Unit {unit_key}: {e.message}")
                await self.escalator.escalate(
                    EscalationKind.PROVISION_FAILED,
                    order,
                    "The provider refused to create an eSIM.",
                    line_item_id=item.line_item_id,
                    unit=unit_key,
                    variant_id=item.variant_id,
                    plan_id=plan_id,
                    customer_id=customer_id,
                    error=e.message,
                    upstream_code=getattr(e, "upstream_code", None),
                )
                continue

            logger.info("esim_created", unit=unit_key, iccid=asset.iccid, asset_id=asset.asset_id)
            outcome.iccids.append(asset.iccid)

            try:
                await self.records.record_esim(order.order_id, asset, unit_key)
            except FulfillmentException as e:
                outcome.fail(f"Unit {unit_key}: eSIM {asset.iccid} not recorded: {e.message}")
                await self.escalator.escalate(
                    EscalationKind.MANUAL_RECORD_REQUIRED,
                    order,
                    "An eSIM was created but could not be recorded on the order. "
                    "Add the identifiers below to the order before it is retried.",
                    line_item_id=item.line_item_id,
                    unit=unit_key,
                    variant_id=item.variant_id,
                    plan_id=plan_id,
                    iccid=asset.iccid,
                    asset_id=asset.asset_id,
                    error=e.message,
                )
            else:
                outcome.units_completed += 1

            await self._send_esim_email(order, asset)

    async def _top_up(
        self,
        order: Order,
        item: LineItem,
        customer_id: str,
        pending: list[int],
        outcome: ItemOutcome,
    ) -> None:
        plan_id = outcome.plan_id or ""
        try:
            assets = await self._load_assets(customer_id)
        except FulfillmentException as e:
            outcome.fail(f"Could not load customer eSIMs: {e.message}", units=len(pending))
            await self.escalator.escalate(
                EscalationKind.TOP_UP_FAILED,
                order,
                "Could not load the customer's eSIMs to apply a top-up.",
                line_item_id=item.line_item_id,
                variant_id=item.variant_id,
                plan_id=plan_id,
                customer_id=customer_id,
                error=e.message,
            )
            return

        match = select_top_up_target(assets, plan_id)
        if match is None:
            outcome.fail(f"No eSIM with plan {plan_id} to top up", units=len(pending))
            await self.escalator.escalate(
                EscalationKind.TOP_UP_UNMATCHED,
                order,
                "The buyer has no usable eSIM carrying this plan type.",
                line_item_id=item.line_item_id,
                variant_id=item.variant_id,
                plan_id=plan_id,
                customer_id=customer_id,
                assets=[a.iccid for a in assets],
            )
            return

        logger.info(
            "top_up_target_selected",
            iccid=match.iccid,
            plan_id=match.plan_id,
            remaining_bytes=match.remaining_bytes,
        )

        for unit in pending:
            unit_key = item.unit_key(unit)
            try:
                plan = await self.provider.create_top_up(match.iccid, plan_id, tag=order.trace_tag)
            except FulfillmentException as e:
                outcome.fail(f"Unit {unit_key}: {e.message}")
                await self.escalator.escalate(
                    EscalationKind.TOP_UP_FAILED,
                    order,
                    "The provider refused a top-up.",
                    line_item_id=item.line_item_id,
                    unit=unit_key,
                    variant_id=item.variant_id,
                    plan_id=plan_id,
                    iccid=match.iccid,
                    error=e.message,
                    upstream_code=getattr(e, "upstream_code", None),
                )
                continue

            logger.info("top_up_applied", unit=unit_key, iccid=match.iccid, plan_id=plan.plan_id)
            if match.iccid not in outcome.iccids:
                outcome.iccids.append(match.iccid)

            try:
                await self.records.record_fulfilled_unit(order.order_id, unit_key)
            except FulfillmentException as e:
                outcome.fail(f"Unit {unit_key}: top-up not recorded: {e.message}")
                await self.escalator.escalate(
                    EscalationKind.MANUAL_RECORD_REQUIRED,
                    order,
                    "A top-up was applied but could not be recorded on the order. "
                    f"Add '{unit_key}' to fulfilled_units before the order is retried.",
                    line_item_id=item.line_item_id,
                    unit=unit_key,
                    variant_id=item.variant_id,
                    plan_id=plan_id,
                    iccid=match.iccid,
                    provider_plan_id=plan.plan_id,
                    error=e.message,
                )
            else:
                outcome.units_completed += 1

            await self._send_top_up_email(order, match.iccid)

    async def _load_assets(self, customer_id: str) -> list[ProvisionedAsset]:
        """The customer's eSIMs with their plans, fetching plans where the listing omits them."""
        customer = await self.provider.get_customer(customer_id)
        assets: list[ProvisionedAsset] = []
        for asset in customer.assets:
            if not asset.plans and asset.is_usable:
                plans = await self.provider.get_esim_plans(asset.iccid)
                asset = asset.model_copy(update={"plans": plans})
            assets.append(asset)
        return assets

    # ─────────────────────────────────────────────────────────────────────────
    # BUYER EMAILS
    # ─────────────────────────────────────────────────────────────────────────

    async def _send_esim_email(self, order: Order, asset: CreatedAsset) -> None:
        html_body = render_esim_delivery(
            first_name=order.first_name,
            order_name=order.name or order.order_id,
            iccid=asset.iccid,
            lpa_string=asset.lpa_string,
            smdp_address=asset.smdp_address,
            manual_code=asset.manual_code,
            apn=asset.apn,
        )
        await self._send_buyer_email(order, "Your eSIM is ready", html_body, asset.iccid)

    async def _send_top_up_email(self, order: Order, iccid: str) -> None:
        html_body = render_top_up_confirmation(
            first_name=order.first_name,
            order_name=order.name or order.order_id,
            iccid=iccid,
        )
        await self._send_buyer_email(order, "Your eSIM top-up is active", html_body, iccid)

    async def _send_buyer_email(self, order: Order, subject: str, html_body: str, iccid: str) -> None:
        """Send a buyer email; failures are logged and never affect the order outcome."""
        if not order.email:
            logger.warning("buyer_email_skipped_no_address", iccid=iccid)
            return
        try:
            sent = await self.notifier.send(to=order.email, subject=subject, html_body=html_body)
        except FulfillmentException as e:
            logger.error("buyer_email_error", iccid=iccid, error=e.message)
            return
        if sent.ok:
            logger.info("buyer_email_sent", iccid=iccid, message_id=sent.provider_message_id)
        else:
            logger.error("buyer_email_failed", iccid=iccid, error=sent.error)
