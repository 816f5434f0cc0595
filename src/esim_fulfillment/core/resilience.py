"""Resilience patterns: bounded retry with exponential backoff and circuit breaker."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from esim_fulfillment.config import settings
from esim_fulfillment.core.logging import get_logger

logger = get_logger(__name__)


# Exceptions that should trigger retry
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def build_retrying(service: str, method: str, url: str, idempotent: bool = True) -> AsyncRetrying:
    """Build the retry controller for one outbound call.

    Only idempotent calls are retried. A provider POST that creates an eSIM or
    a top-up runs exactly once; a transport failure there surfaces immediately.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "request_retry",
            service=service,
            method=method,
            url=url,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    return AsyncRetrying(
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        stop=stop_after_attempt(settings.retry_max_attempts if idempotent else 1),
        wait=wait_exponential(
            multiplier=settings.retry_multiplier,
            min=settings.retry_min_wait,
            max=settings.retry_max_wait,
        ),
        reraise=True,
        before_sleep=_log_retry,
    )


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreaker:
    """Per-service circuit breaker.

    Opens after `threshold` consecutive failures and rejects calls until
    `timeout` seconds have passed, then lets a probe through.
    """

    name: str
    threshold: int = field(default_factory=lambda: settings.circuit_breaker_threshold)
    timeout: float = field(default_factory=lambda: settings.circuit_breaker_timeout)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, handling timeout transition."""
        if self._state == CircuitState.OPEN:
            if time.time() - self._last_failure_time >= self.timeout:
                return CircuitState.HALF_OPEN
        return self._state

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            if self._state == CircuitState.OPEN:
                logger.info("circuit_breaker_closed", name=self.name)
            self._failures = 0
            self._state = CircuitState.CLOSED

    async def record_failure(self, error: Exception) -> None:
        """Record a failed call."""
        async with self._lock:
            self._failures += 1
            self._last_failure_time = time.time()

            if self._failures >= self.threshold and self._state != CircuitState.OPEN:
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=self._failures,
                    threshold=self.threshold,
                    error=str(error),
                )
                self._state = CircuitState.OPEN

    async def can_execute(self) -> bool:
        """Check if a request can be executed."""
        return self.state != CircuitState.OPEN


# Service-specific circuit breakers
_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(service: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if service not in _circuit_breakers:
        _circuit_breakers[service] = CircuitBreaker(name=service)
    return _circuit_breakers[service]


def reset_circuit_breakers() -> None:
    """Reset all circuit breakers (useful for testing)."""
    _circuit_breakers.clear()
