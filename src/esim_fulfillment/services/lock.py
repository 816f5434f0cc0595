"""Per-order processing lock stored on the order record.

There is no lock service; the lock is a JSON metafield on the order. Acquire
is write-then-verify: after writing our token we read the record back and only
claim the lock if our token survived. Of two deliveries that both saw the lock
free, only the last writer wins.
"""

import secrets
from collections.abc import Callable
from datetime import datetime, timezone

from esim_fulfillment.config import settings
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.models.fulfillment import LockResult, LockState, ReleaseResult
from esim_fulfillment.services.records import OrderRecordRepository

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingLock:
    """TTL-bounded, token-owned mutual exclusion per order."""

    def __init__(
        self,
        records: OrderRecordRepository,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._records = records
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.lock_ttl_seconds
        self._clock = clock

    def is_stale(self, state: LockState, now: datetime) -> bool:
        """A held lock older than the TTL (or with no timestamp) was abandoned."""
        if state.acquired_at is None:
            return True
        acquired_at = state.acquired_at
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=timezone.utc)
        return (now - acquired_at).total_seconds() >= self.ttl_seconds

    async def try_acquire(self, order_id: str) -> LockResult:
        """Acquire the lock for an order.

        Raises:
            StoreException: the lock could not be read, written or confirmed;
                callers must treat this as not acquired
        """
        now = self._clock()
        current = await self._records.read_lock(order_id)

        if current.held and not self.is_stale(current, now):
            logger.info(
                "lock_busy",
                order_id=order_id,
                acquired_at=current.acquired_at.isoformat() if current.acquired_at else None,
            )
            return LockResult(acquired=False, reason="locked")

        if current.held:
            logger.warning(
                "lock_stale_takeover",
                order_id=order_id,
                acquired_at=current.acquired_at.isoformat() if current.acquired_at else None,
                ttl_seconds=self.ttl_seconds,
            )

        token = secrets.token_urlsafe(16)
        await self._records.write_lock(
            order_id, LockState(held=True, token=token, acquired_at=now)
        )

        confirmed = await self._records.read_lock(order_id)
        if not confirmed.held or confirmed.token != token:
            logger.info("lock_lost_race", order_id=order_id)
            return LockResult(acquired=False, reason="lost_race")

        logger.info("lock_acquired", order_id=order_id)
        return LockResult(acquired=True, token=token)

    async def release(self, order_id: str, token: str) -> ReleaseResult:
        """Release the lock if, and only if, it is still held with our token."""
        current = await self._records.read_lock(order_id)

        if not current.held:
            logger.info("lock_release_not_locked", order_id=order_id)
            return ReleaseResult(released=False, reason="not_locked")

        if current.token != token:
            # Someone took the lock over after our TTL ran out
            logger.warning("lock_release_token_mismatch", order_id=order_id)
            return ReleaseResult(released=False, reason="token_mismatch")

        await self._records.write_lock(order_id, LockState(held=False))
        logger.info("lock_released", order_id=order_id)
        return ReleaseResult(released=True)
