"""Variant -> (plan id, action kind) resolution."""

from esim_fulfillment.core.exceptions import FulfillmentException
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.models.fulfillment import ActionKind, LineItemResolution
from esim_fulfillment.models.order import LineItem
from esim_fulfillment.stores.base import BaseRecordStore

logger = get_logger(__name__)

# Product type metafield values, compared lower-cased
ACTION_KIND_MAP: dict[str, ActionKind] = {
    "esim": ActionKind.PROVISION,
    "provision": ActionKind.PROVISION,
    "new": ActionKind.PROVISION,
    "new_esim": ActionKind.PROVISION,
    "nouvelle esim": ActionKind.PROVISION,
    "topup": ActionKind.TOP_UP,
    "top-up": ActionKind.TOP_UP,
    "top_up": ActionKind.TOP_UP,
    "recharge": ActionKind.TOP_UP,
}


def parse_action_kind(raw: str | None) -> ActionKind | None:
    """Map a product type value to an action; raises ValueError when unrecognised."""
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value not in ACTION_KIND_MAP:
        raise ValueError(f"Unknown product type '{raw}'")
    return ACTION_KIND_MAP[value]


class LineItemResolver:
    """Looks up the catalog metadata configured on the purchased variant."""

    def __init__(self, store: BaseRecordStore):
        self._store = store

    async def resolve(self, item: LineItem) -> LineItemResolution:
        """Resolve a line item; failures come back as a resolution with `error` set."""
        if not item.variant_id:
            return LineItemResolution(error="Line item has no variant id")

        try:
            config = await self._store.get_variant_config(item.variant_id)
        except FulfillmentException as e:
            logger.warning("variant_lookup_failed", variant_id=item.variant_id, error=e.message)
            return LineItemResolution(error=f"Variant lookup failed: {e.message}")

        if not config.plan_id:
            return LineItemResolution(error=f"Variant {item.variant_id} has no plan id configured")

        try:
            action = config.action or parse_action_kind(config.raw_action)
        except ValueError as e:
            return LineItemResolution(plan_id=config.plan_id, error=str(e))

        return LineItemResolution(
            plan_id=config.plan_id,
            action=action or ActionKind.PROVISION,
        )
