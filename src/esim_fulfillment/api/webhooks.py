"""Commerce webhook routes."""

import json

from fastapi import APIRouter, Depends, Header
from pydantic import ValidationError

from esim_fulfillment.api.dependencies import get_orchestrator
from esim_fulfillment.config import settings
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.core.security import verified_webhook_body
from esim_fulfillment.models.fulfillment import FulfillmentStatus
from esim_fulfillment.models.order import ShopifyOrderPayload
from esim_fulfillment.models.responses import WebhookResponse
from esim_fulfillment.services.orchestrator import FulfillmentOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ORDER_PAID_TOPIC = "orders/paid"


@router.post("/order-paid", response_model=WebhookResponse)
async def order_paid(
    raw_body: bytes = Depends(verified_webhook_body),
    x_shopify_topic: str | None = Header(None),
    x_shopify_shop_domain: str | None = Header(None),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> WebhookResponse:
    """Fulfill a paid order.

    Every outcome after signature verification is acknowledged with 200;
    failed items were already escalated and the order stays unprocessed so a
    redelivery retries it.
    """
    if x_shopify_topic and x_shopify_topic != ORDER_PAID_TOPIC:
        logger.info("webhook_topic_ignored", topic=x_shopify_topic)
        return WebhookResponse(topic=x_shopify_topic, message="Topic ignored")

    try:
        payload = ShopifyOrderPayload.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError) as e:
        logger.warning("webhook_payload_invalid", shop=x_shopify_shop_domain, error=str(e))
        return WebhookResponse(
            ok=False,
            topic=x_shopify_topic,
            status=FulfillmentStatus.REJECTED,
            message="Unparseable order payload",
        )

    order = payload.to_order(settings.default_country_code, shop_domain=x_shopify_shop_domain)
    result = await orchestrator.process(order)

    return WebhookResponse(
        ok=result.status
        in (FulfillmentStatus.COMPLETED, FulfillmentStatus.ALREADY_PROCESSED, FulfillmentStatus.LOCKED),
        topic=x_shopify_topic,
        order_id=result.order_id,
        status=result.status,
        processed=result.processed,
        items=result.items,
        message=result.error or result.lock_reason,
    )
