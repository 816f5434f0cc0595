"""Human escalation for failures the service cannot resolve on its own."""

import json
from enum import Enum
from typing import Any

from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.models.order import Order
from esim_fulfillment.notifications.base import BaseNotifier
from esim_fulfillment.notifications.templates import render_escalation

logger = get_logger(__name__)


class EscalationKind(str, Enum):
    """Why an operator is being paged."""

    CUSTOMER_RESOLUTION_FAILED = "customer_resolution_failed"
    LINE_ITEM_UNRESOLVED = "line_item_unresolved"
    TOP_UP_UNMATCHED = "top_up_unmatched"
    TOP_UP_FAILED = "top_up_failed"
    PROVISION_FAILED = "provision_failed"
    MANUAL_RECORD_REQUIRED = "manual_record_required"
    MARK_PROCESSED_FAILED = "mark_processed_failed"


ESCALATION_TITLES: dict[EscalationKind, str] = {
    EscalationKind.CUSTOMER_RESOLUTION_FAILED: "Fulfillment blocked: provider customer unavailable",
    EscalationKind.LINE_ITEM_UNRESOLVED: "Line item has no usable plan mapping",
    EscalationKind.TOP_UP_UNMATCHED: "Top-up has no matching eSIM",
    EscalationKind.TOP_UP_FAILED: "Top-up failed at the provider",
    EscalationKind.PROVISION_FAILED: "eSIM creation failed at the provider",
    EscalationKind.MANUAL_RECORD_REQUIRED: "MANUAL ACTION REQUIRED: provider effect not recorded on order",
    EscalationKind.MARK_PROCESSED_FAILED: "Order fulfilled but could not be marked processed",
}


class Escalator:
    """Sends operator emails with enough context to finish the job by hand.

    Escalation never raises: a failure to escalate is logged at error level and
    the caller carries on with its own failure bookkeeping.
    """

    def __init__(self, notifier: BaseNotifier, ops_email: str):
        self._notifier = notifier
        self._ops_email = ops_email

    async def escalate(
        self,
        kind: EscalationKind,
        order: Order,
        summary: str,
        **details: Any,
    ) -> bool:
        context: dict[str, Any] = {
            "kind": kind.value,
            "order_id": order.order_id,
            "order_name": order.name,
            "shop": order.shop_domain,
            "buyer_email": order.email,
            "buyer_name": order.buyer_name,
            "commerce_customer_id": order.customer_id,
            **details,
        }
        logger.error("fulfillment_escalation", summary=summary, **context)

        if not self._ops_email:
            logger.error("escalation_not_sent_no_recipient", kind=kind.value, order_id=order.order_id)
            return False

        title = ESCALATION_TITLES[kind]
        body = render_escalation(
            title,
            summary,
            {k: json.dumps(v) if isinstance(v, (dict, list)) else v for k, v in context.items()},
        )
        try:
            result = await self._notifier.send(
                to=self._ops_email,
                subject=f"[eSIM fulfillment] {title} (order {order.name or order.order_id})",
                html_body=body,
            )
        except Exception as e:  # noqa: BLE001
            logger.error("escalation_send_error", kind=kind.value, order_id=order.order_id, error=str(e))
            return False

        if not result.ok:
            logger.error(
                "escalation_send_failed", kind=kind.value, order_id=order.order_id, error=result.error
            )
            return False

        logger.info("escalation_sent", kind=kind.value, order_id=order.order_id)
        return True
