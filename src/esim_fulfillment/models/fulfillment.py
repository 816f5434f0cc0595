"""Fulfillment outcome models.

Every step of processing an order reports an explicit result value; the
orchestrator folds them into a `FulfillmentResult` instead of relying on
exceptions to signal "this step failed but its siblings continue".
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

# ─────────────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────────────


class ActionKind(str, Enum):
    """What a purchased variant asks the provider to do."""

    PROVISION = "provision"  # Issue a new eSIM
    TOP_UP = "top_up"  # Add a plan to an eSIM the customer already holds


class ItemStatus(str, Enum):
    """Outcome of one line item."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    """Terminal outcome of one delivery of an order event."""

    REJECTED = "rejected"  # No order id in the event
    ALREADY_PROCESSED = "already_processed"  # Idempotent replay
    LOCKED = "locked"  # Another delivery holds the processing lock
    COMPLETED = "completed"  # All items fulfilled, order marked processed
    PARTIAL_FAILURE = "partial_failure"  # Some items failed, order left unprocessed
    FAILED = "failed"  # Nothing could be attempted, order left unprocessed


# ─────────────────────────────────────────────────────────────────────────────
# LINE ITEM RESOLUTION
# ─────────────────────────────────────────────────────────────────────────────


class VariantConfig(BaseModel):
    """Per-variant catalog metadata."""

    plan_id: str | None = None
    action: ActionKind | None = None
    raw_action: str | None = None  # Metafield value before mapping, for diagnostics


class LineItemResolution(BaseModel):
    """Resolved plan and action for a line item, or why it could not be resolved."""

    plan_id: str | None = None
    action: ActionKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.plan_id is not None and self.action is not None


class BestMatch(BaseModel):
    """The existing plan selected to receive a top-up."""

    iccid: str
    asset_id: str | None = None
    plan_id: str
    plan_type_id: str
    remaining_bytes: int | None = None
    activated: bool = False
    start_time: datetime | None = None


# ─────────────────────────────────────────────────────────────────────────────
# IDEMPOTENCY & LOCK
# ─────────────────────────────────────────────────────────────────────────────


class ProcessedFlag(BaseModel):
    """Whether an order has been fully fulfilled. Once true it never flips back."""

    processed: bool = False
    processed_at: datetime | None = None


class LockState(BaseModel):
    """Processing lock as persisted on the order record."""

    held: bool = False
    token: str | None = None
    acquired_at: datetime | None = None


class LockResult(BaseModel):
    """Outcome of an acquire attempt."""

    acquired: bool
    token: str | None = None
    reason: str | None = None  # "locked" | "lost_race"


class ReleaseResult(BaseModel):
    """Outcome of a release attempt."""

    released: bool
    reason: str | None = None  # "not_locked" | "token_mismatch"


# ─────────────────────────────────────────────────────────────────────────────
# OUTCOMES
# ─────────────────────────────────────────────────────────────────────────────


class ItemOutcome(BaseModel):
    """Result of fulfilling one line item."""

    line_item_id: str
    variant_id: str | None = None
    action: ActionKind | None = None
    plan_id: str | None = None
    status: ItemStatus = ItemStatus.SUCCEEDED
    units_completed: int = 0
    units_skipped: int = 0  # Completed by an earlier delivery
    units_failed: int = 0
    iccids: list[str] = []
    errors: list[str] = []

    @property
    def failed(self) -> bool:
        return self.status == ItemStatus.FAILED

    def fail(self, error: str, units: int = 1) -> None:
        self.status = ItemStatus.FAILED
        self.units_failed += units
        self.errors.append(error)


class FulfillmentResult(BaseModel):
    """Result of handling one order event."""

    order_id: str | None = None
    status: FulfillmentStatus
    processed: bool = False
    customer_id: str | None = None
    items: list[ItemOutcome] = []
    error: str | None = None
    lock_reason: str | None = None

    @property
    def partial_failure(self) -> bool:
        return any(item.failed for item in self.items)
