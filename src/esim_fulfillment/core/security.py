"""Inbound authentication and rate limiting."""

import base64
import hashlib
import hmac

from fastapi import Header, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import ConfigurationException, SignatureException
from esim_fulfillment.core.logging import get_logger

logger = get_logger(__name__)

WEBHOOK_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
CRON_TOKEN_HEADER = "X-Cron-Token"


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw request body, as the sender computes it."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(raw_body: bytes, header: str | None, secret: str) -> bool:
    """Check the signature header against the body in constant time.

    The body must be the exact bytes received; re-serialized JSON will not match.
    """
    if not header or not secret:
        return False
    expected = compute_webhook_signature(raw_body, secret)
    return hmac.compare_digest(expected, header.strip())


async def verified_webhook_body(request: Request) -> bytes:
    """FastAPI dependency returning the raw body of a correctly signed webhook.

    Raises:
        ConfigurationException: no webhook secret is configured
        SignatureException: signature missing or wrong
    """
    secret = settings.shopify_webhook_secret
    if not secret:
        raise ConfigurationException("Webhook secret is not configured")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body, request.headers.get(WEBHOOK_SIGNATURE_HEADER), secret):
        logger.warning(
            "webhook_signature_invalid",
            shop=request.headers.get("X-Shopify-Shop-Domain"),
            topic=request.headers.get("X-Shopify-Topic"),
        )
        raise SignatureException("Invalid webhook signature")
    return raw_body


async def verify_cron_token(
    x_cron_token: str | None = Header(None, alias=CRON_TOKEN_HEADER),
    token: str | None = Query(None, description="Trigger token, if the header cannot be set"),
) -> None:
    """Authenticate a scheduled job trigger by header or query parameter."""
    if not settings.cron_token:
        raise HTTPException(
            status_code=500,
            detail="Job trigger token is not configured",
        )

    if not settings.is_valid_cron_token(x_cron_token or token):
        raise HTTPException(
            status_code=401,
            detail=f"Missing or invalid token. Include it in the {CRON_TOKEN_HEADER} header.",
        )


# Rate limiter instance
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_requests}/{settings.rate_limit_window}"],
)
