"""HTTP response envelopes."""

from pydantic import BaseModel

from esim_fulfillment.models.fulfillment import FulfillmentStatus, ItemOutcome


class ErrorDetail(BaseModel):
    """Error details."""

    code: str  # Machine-readable code
    message: str  # Human-readable message
    upstream_code: str | None = None  # Original upstream error code
    upstream_message: str | None = None


class ErrorResponse(BaseModel):
    """Error response envelope."""

    ok: bool = False
    error: ErrorDetail
    service: str | None = None


class WebhookResponse(BaseModel):
    """Acknowledgement of an order event.

    Always returned with status 200 once the signature verified, so the sender
    does not retry business failures that were already escalated.
    """

    ok: bool = True
    topic: str | None = None
    order_id: str | None = None
    status: FulfillmentStatus | None = None
    processed: bool = False
    items: list[ItemOutcome] = []
    message: str | None = None


class UsageScanResponse(BaseModel):
    """Result of a usage-alert scan trigger."""

    ok: bool = True
    threshold: int
    lookback_days: int
    scanned: int
    assets_checked: int
    alerts_sent: int
    already_sent: int
    skipped_no_email: int
    errors: int
