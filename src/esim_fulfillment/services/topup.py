"""Top-up target selection.

A customer may hold several eSIMs bought for different trips. Topping up the
most recent one would often hit the wrong trip, so the target is the matching
plan closest to running out.
"""

from datetime import datetime, timezone

from esim_fulfillment.models.esim import Plan, ProvisionedAsset
from esim_fulfillment.models.fulfillment import BestMatch

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _normalize(plan_type_id: str | None) -> str:
    return (plan_type_id or "").strip().lower()


def _rank(plan: Plan) -> tuple[float, int, datetime]:
    """Lowest remaining bytes, then activated first, then earliest start."""
    remaining = float(plan.remaining_bytes) if plan.remaining_bytes is not None else float("inf")
    return (
        remaining,
        0 if plan.is_activated else 1,
        plan.start_time or _FAR_FUTURE,
    )


def select_top_up_target(assets: list[ProvisionedAsset], target_plan_type_id: str) -> BestMatch | None:
    """Pick the single existing plan to recharge, or None when nothing matches.

    Terminated and cancelled eSIMs are never candidates. Ties that survive all
    three ranking rules keep the provider's ordering, so the result is stable
    for a given input.
    """
    target = _normalize(target_plan_type_id)
    if not target:
        return None

    candidates = [
        (asset, plan)
        for asset in assets
        if asset.is_usable
        for plan in asset.plans
        if _normalize(plan.plan_type_id) == target
    ]
    if not candidates:
        return None

    asset, plan = min(candidates, key=lambda pair: _rank(pair[1]))
    return BestMatch(
        iccid=asset.iccid,
        asset_id=asset.asset_id,
        plan_id=plan.plan_id,
        plan_type_id=plan.plan_type_id,
        remaining_bytes=plan.remaining_bytes,
        activated=plan.is_activated,
        start_time=plan.start_time,
    )
