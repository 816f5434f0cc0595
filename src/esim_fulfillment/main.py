import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from esim_fulfillment.api.router import api_router
from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import FulfillmentException, UpstreamException
from esim_fulfillment.core.logging import configure_logging, get_logger, set_request_id
from esim_fulfillment.core.resilience import reset_circuit_breakers
from esim_fulfillment.core.security import limiter
from esim_fulfillment.models.responses import ErrorDetail, ErrorResponse
from esim_fulfillment.notifications.registry import close_notifier
from esim_fulfillment.providers.registry import close_providers
from esim_fulfillment.stores.registry import close_store

# Configure logging (JSON outside development)
configure_logging(json_logs=settings.env != "development", log_level=settings.log_level)
logger = get_logger(__name__)

UNLOGGED_PATHS = {"/health", "/ping"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    # Startup
    logger.info(
        "application_starting",
        env=settings.env,
        shop=settings.shopify_shop_domain or None,
        provider=settings.provisioning_provider,
        lock_ttl_seconds=settings.lock_ttl_seconds,
    )

    missing = [
        name
        for name, value in (
            ("SHOPIFY_WEBHOOK_SECRET", settings.shopify_webhook_secret),
            ("SHOPIFY_ACCESS_TOKEN", settings.shopify_access_token),
            ("MAYA_AUTH", settings.maya_auth),
            ("EMAIL_API_KEY", settings.email_api_key),
            ("OPS_EMAIL", settings.ops_email),
            ("CRON_TOKEN", settings.cron_token),
        )
        if not value
    ]
    if missing:
        logger.warning("configuration_incomplete", missing=missing)

    yield

    # Shutdown - cleanup resources
    logger.info("application_shutting_down")
    await close_providers()
    await close_store()
    await close_notifier()
    reset_circuit_breakers()


app = FastAPI(
    title="eSIM Fulfillment",
    description="Fulfills paid Shopify orders with Maya Connectivity eSIMs",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def log_requests(request: Request, call_next: Any) -> Any:
    """Log all incoming requests and responses."""
    # Set correlation ID from header or generate new one
    request_id = request.headers.get("X-Request-ID")
    request_id = set_request_id(request_id)

    if request.url.path in UNLOGGED_PATHS:
        return await call_next(request)

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        topic=request.headers.get("X-Shopify-Topic"),
        client=request.client.host if request.client else None,
    )

    start_time = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        elapsed_ms=round(elapsed_ms, 2),
    )

    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(UpstreamException)
async def upstream_exception_handler(
    request: Request,  # noqa: ARG001
    exc: UpstreamException,
) -> JSONResponse:
    """Handle errors from the store, provider or notifier."""
    error_response = ErrorResponse(
        error=ErrorDetail(
            code=exc.error_code,
            message=exc.message,
            upstream_code=exc.upstream_code,
            upstream_message=exc.upstream_message,
        ),
        service=exc.service,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(),
    )


@app.exception_handler(FulfillmentException)
async def fulfillment_exception_handler(
    request: Request,  # noqa: ARG001
    exc: FulfillmentException,
) -> JSONResponse:
    """Handle configuration, signature and validation errors."""
    if exc.status_code >= 500:
        logger.error("request_failed", error_code=exc.error_code, error=exc.message)
    error_response = ErrorResponse(
        error=ErrorDetail(
            code=exc.error_code,
            message=exc.message,
        ),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(),
    )


app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "esim-fulfillment"}


@app.get("/ping", tags=["Health"], response_class=PlainTextResponse)
async def ping() -> str:
    return "pong"
