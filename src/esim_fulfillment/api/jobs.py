"""Scheduled job triggers."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from esim_fulfillment.api.dependencies import get_usage_scanner
from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import FulfillmentException, UpstreamException
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.core.security import limiter, verify_cron_token
from esim_fulfillment.models.responses import ErrorDetail, ErrorResponse, UsageScanResponse
from esim_fulfillment.services.usage_alerts import UsageAlertScanner

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(verify_cron_token)])


@router.get("/usage-alerts", response_model=UsageScanResponse)
@limiter.limit(settings.job_rate_limit)
async def usage_alerts(
    request: Request,  # noqa: ARG001
    threshold: int | None = Query(None, ge=1, le=100, description="Alert threshold in percent"),
    days_back: int | None = Query(None, ge=1, le=365, description="Order lookback window in days"),
    scanner: UsageAlertScanner = Depends(get_usage_scanner),
) -> UsageScanResponse | JSONResponse:
    """Run one usage-alert scan."""
    try:
        result = await scanner.run(
            threshold=threshold or settings.usage_alert_threshold,
            lookback_days=days_back or settings.usage_lookback_days,
        )
    except FulfillmentException as e:
        logger.error("usage_scan_failed", error=e.message)
        error_response = ErrorResponse(
            error=ErrorDetail(
                code=e.error_code,
                message=e.message,
                upstream_code=getattr(e, "upstream_code", None),
                upstream_message=getattr(e, "upstream_message", None),
            ),
            service=e.service if isinstance(e, UpstreamException) else None,
        )
        return JSONResponse(status_code=500, content=error_response.model_dump())

    return UsageScanResponse(**result.model_dump())
