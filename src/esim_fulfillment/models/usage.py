"""Usage alert models."""

import math

from pydantic import BaseModel

from esim_fulfillment.models.esim import Plan


def usage_alert_key(threshold: int, iccid: str) -> str:
    """Dedup key for one (threshold, eSIM) alert, e.g. `usage_alert_80_8910300000057318645`."""
    t = str(threshold).strip()
    i = str(iccid or "").strip()
    if not t or not i:
        raise ValueError("usage_alert_key: missing threshold or iccid")
    return f"usage_alert_{t}_{i}"


def percent_used(plan: Plan) -> int | None:
    """Whole-number share of the quota already consumed.

    Returns None when the quota is missing, non-positive or not finite.
    """
    quota = plan.quota_bytes
    if quota is None or not math.isfinite(quota) or quota <= 0:
        return None
    remaining = plan.remaining_bytes if plan.remaining_bytes is not None else quota
    used = quota - remaining
    # Halves round up, so 74.5% reports as 75
    return (200 * used + quota) // (2 * quota)


class OrderWithAssets(BaseModel):
    """An order that has eSIMs recorded on it, as returned by the usage search."""

    order_id: str
    name: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    iccids: list[str] = []
    alerts_sent: list[str] = []


class UsageScanResult(BaseModel):
    """Summary of one usage scan pass."""

    threshold: int
    lookback_days: int
    scanned: int = 0  # Orders scanned
    assets_checked: int = 0
    alerts_sent: int = 0
    already_sent: int = 0
    skipped_no_email: int = 0
    errors: int = 0
