import time
from typing import Any

import httpx

from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import UpstreamException
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.core.resilience import build_retrying, get_circuit_breaker

logger = get_logger(__name__)


def _sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    """Redact sensitive header values for logging."""
    sensitive = {"authorization", "x-api-key", "x-shopify-access-token"}
    return {
        k: "***" if k.lower() in sensitive else v
        for k, v in headers.items()
    }


def _parse_body(response: httpx.Response) -> Any:
    """Decode a JSON body, keeping the raw text when it is not JSON."""
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


class HTTPClient:
    """Async HTTP client wrapper for one upstream service.

    Uses a shared client instance with connection pooling, a per-service
    circuit breaker, and retries with exponential backoff for idempotent calls.
    Every failure is raised as `error_class` so callers can tell which
    collaborator failed.
    """

    def __init__(
        self,
        base_url: str,
        service: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        error_class: type[UpstreamException] = UpstreamException,
    ):
        self.base_url = base_url.rstrip("/")
        self.service = service
        self.default_headers = headers or {}
        self.timeout = timeout or settings.http_timeout
        self.error_class = error_class
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                http2=True,
                limits=httpx.Limits(
                    max_keepalive_connections=settings.http_max_keepalive,
                    max_connections=settings.http_max_connections,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        idempotent: bool = True,
    ) -> Any:
        """Make an HTTP request with circuit breaker and bounded retry."""
        url = f"{self.base_url}{path}"
        merged_headers = {**self.default_headers, **(headers or {})}

        circuit_breaker = get_circuit_breaker(self.service)
        if not await circuit_breaker.can_execute():
            logger.warning(
                "circuit_breaker_rejected",
                service=self.service,
                method=method,
                url=url,
            )
            raise self.error_class(
                message="Service temporarily unavailable (circuit breaker open)",
                service=self.service,
            )

        logger.info(
            "upstream_request",
            service=self.service,
            method=method,
            url=url,
            params=params,
            headers=_sanitize_headers(merged_headers),
        )

        start_time = time.perf_counter()
        try:
            async for attempt in build_retrying(self.service, method, url, idempotent):
                with attempt:
                    client = await self._get_client()
                    response = await client.request(
                        method=method,
                        url=url,
                        params=params,
                        json=json,
                        headers=merged_headers,
                    )
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            body = _parse_body(response)

            logger.info(
                "upstream_response",
                service=self.service,
                method=method,
                url=url,
                status=response.status_code,
                elapsed_ms=round(elapsed_ms, 2),
            )

            response.raise_for_status()
            await circuit_breaker.record_success()
            return body
        except httpx.HTTPStatusError as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_body = _parse_body(e.response)

            logger.warning(
                "upstream_error",
                service=self.service,
                method=method,
                url=url,
                status=e.response.status_code,
                elapsed_ms=round(elapsed_ms, 2),
                error=error_body,
            )

            # Only 5xx responses count against the circuit breaker
            if e.response.status_code >= 500:
                await circuit_breaker.record_failure(e)

            raise self.error_class(
                message=f"{self.service} returned {e.response.status_code}",
                service=self.service,
                upstream_code=str(e.response.status_code),
                upstream_message=str(error_body),
            ) from e
        except httpx.RequestError as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "upstream_connection_error",
                service=self.service,
                method=method,
                url=url,
                elapsed_ms=round(elapsed_ms, 2),
                error=str(e),
            )

            await circuit_breaker.record_failure(e)

            raise self.error_class(
                message=f"Request to {self.service} failed: {e!r}",
                service=self.service,
            ) from e

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Make a GET request."""
        return await self.request("GET", path, params=params, headers=headers)

    async def post(
        self,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        idempotent: bool = False,
    ) -> Any:
        """Make a POST request. POSTs are not retried unless marked idempotent."""
        return await self.request(
            "POST",
            path,
            json=json,
            params=params,
            headers=headers,
            idempotent=idempotent,
        )
