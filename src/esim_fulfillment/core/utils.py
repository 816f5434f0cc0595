"""Shared parsing and caching utilities.

Provider and store payloads are loosely shaped JSON; these helpers turn the
raw values into typed ones once, at the boundary.
"""

import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T", bound=Enum)

# Providers return this instead of null for "never happened"
NULL_DATE_SENTINELS = {"0000-00-00 00:00:00", "0000-00-00T00:00:00", "0000-00-00"}


def parse_datetime(date_str: str | None, formats: list[str] | None = None) -> datetime | None:
    """Parse datetime from various string formats.

    Naive results are assumed to be UTC so that values from different
    providers compare against each other.

    Args:
        date_str: Date string to parse
        formats: List of datetime formats to try. Defaults to common formats.

    Returns:
        Parsed timezone-aware datetime, or None if empty, a null-date sentinel,
        or unparseable
    """
    if not date_str or not isinstance(date_str, str):
        return None

    value = date_str.strip()
    if not value or value in NULL_DATE_SENTINELS:
        return None

    if formats is None:
        formats = [
            "%Y-%m-%dT%H:%M:%S.%fZ",
            "%Y-%m-%dT%H:%M:%SZ",
            "%Y-%m-%dT%H:%M:%S%z",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d %H:%M:%S",
        ]

    parsed: datetime | None = None
    for fmt in formats:
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except (ValueError, TypeError):
            continue

    if parsed is None:
        # Handle ISO format with Z suffix
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except (ValueError, TypeError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int(value: Any) -> int | None:
    """Parse an integer count (e.g. bytes) that may arrive as a string or float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = value.replace(",", "").strip()
        try:
            return int(float(cleaned))
        except (ValueError, OverflowError):
            return None
    return None


def map_status(value: str | None, mapping: dict[str, T], default: T) -> T:
    """Map a provider status string to a unified enum value.

    Args:
        value: Status string from provider
        mapping: Dictionary mapping provider values to enum values
        default: Default enum value if no match found

    Returns:
        Mapped enum value
    """
    if not value:
        return default
    value = value.strip()
    for candidate in (value, value.upper(), value.lower()):
        if candidate in mapping:
            return mapping[candidate]
    return default


def split_lines(value: str | None) -> list[str]:
    """Split a multi-line metafield value into its non-empty entries."""
    return [line.strip() for line in str(value or "").split("\n") if line.strip()]


class TTLCache:
    """Simple TTL-based cache for a single value."""

    def __init__(self, ttl: int = 300):
        """Initialize cache with TTL in seconds."""
        self._data: Any = None
        self._timestamp: float = 0
        self._ttl = ttl

    def is_valid(self) -> bool:
        """Check if cache has valid data."""
        if self._data is None:
            return False
        return (time.time() - self._timestamp) < self._ttl

    def get(self) -> Any:
        """Get cached data (may be stale or None)."""
        return self._data

    def set(self, data: Any) -> None:
        """Set cache data and update timestamp."""
        self._data = data
        self._timestamp = time.time()

    def clear(self) -> None:
        """Clear the cache."""
        self._data = None
        self._timestamp = 0


class MultiCache:
    """Multiple TTL caches with named keys.

    Usage:
        configs = MultiCache(ttl=300)

        if not configs.is_valid(variant_id):
            configs.set(variant_id, await fetch_config(variant_id))

        return configs.get(variant_id)
    """

    def __init__(self, ttl: int = 300):
        """Initialize with default TTL."""
        self._ttl = ttl
        self._caches: dict[str, TTLCache] = {}

    def _get_cache(self, key: str) -> TTLCache:
        """Get or create cache for key."""
        if key not in self._caches:
            self._caches[key] = TTLCache(self._ttl)
        return self._caches[key]

    def is_valid(self, key: str) -> bool:
        """Check if cache for key has valid data."""
        return self._get_cache(key).is_valid()

    def get(self, key: str) -> Any:
        """Get cached data for key."""
        return self._get_cache(key).get()

    def set(self, key: str, data: Any) -> None:
        """Set cached data for key."""
        self._get_cache(key).set(data)

    def clear(self, key: str | None = None) -> None:
        """Clear specific cache or all caches."""
        if key is None:
            self._caches.clear()
        elif key in self._caches:
            self._caches[key].clear()
