"""Typed access to the fulfillment state stored on order and customer records.

All idempotency, lock, eSIM and alert bookkeeping goes through this class so
the orchestrator never handles raw metafield keys or serialized values.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import ValidationError

from esim_fulfillment.core.exceptions import StoreException
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.core.utils import parse_datetime, split_lines
from esim_fulfillment.models.esim import CreatedAsset
from esim_fulfillment.models.fulfillment import LockState, ProcessedFlag
from esim_fulfillment.models.usage import OrderWithAssets
from esim_fulfillment.stores.base import (
    BaseRecordStore,
    FieldType,
    MetafieldInput,
    RecordOwner,
)

logger = get_logger(__name__)


class MetafieldKey(str, Enum):
    """Every metafield the service reads or writes."""

    PROCESSED = "fulfillment_processed"
    PROCESSED_AT = "fulfillment_processed_at"
    LOCK = "fulfillment_lock"
    FULFILLED_UNITS = "fulfilled_units"
    ESIM_ICCIDS = "esim_iccids"
    ESIM_UIDS = "esim_uids"
    USAGE_ALERTS_SENT = "usage_alerts_sent"
    PROVISIONING_CUSTOMER_ID = "provisioning_customer_id"


def _append_unique(entries: list[str], value: str | None) -> list[str]:
    if value and value not in entries:
        return [*entries, value]
    return entries


class OrderRecordRepository:
    """Fulfillment state persisted as metafields."""

    def __init__(self, store: BaseRecordStore):
        self._store = store

    async def _read(self, owner: RecordOwner, *keys: MetafieldKey) -> dict[MetafieldKey, str | None]:
        values = await self._store.read_fields(owner, [k.value for k in keys])
        return {k: values.get(k.value) for k in keys}

    async def _write(self, owner: RecordOwner, fields: list[MetafieldInput]) -> None:
        user_errors = await self._store.write_fields(owner, fields)
        if user_errors:
            raise StoreException(
                message=user_errors[0].message,
                service=self._store.name,
                upstream_message="; ".join(e.message for e in user_errors),
            )

    # ─────────────────────────────────────────────────────────────────────────
    # PROCESSED FLAG
    # ─────────────────────────────────────────────────────────────────────────

    async def get_processed_flag(self, order_id: str) -> ProcessedFlag:
        values = await self._read(
            RecordOwner.order(order_id), MetafieldKey.PROCESSED, MetafieldKey.PROCESSED_AT
        )
        raw = (values[MetafieldKey.PROCESSED] or "").strip().lower()
        return ProcessedFlag(
            processed=raw == "true",
            processed_at=parse_datetime(values[MetafieldKey.PROCESSED_AT]),
        )

    async def is_processed(self, order_id: str) -> bool:
        return (await self.get_processed_flag(order_id)).processed

    async def mark_processed(self, order_id: str, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        await self._write(
            RecordOwner.order(order_id),
            [
                MetafieldInput(key=MetafieldKey.PROCESSED.value, value="true"),
                MetafieldInput(key=MetafieldKey.PROCESSED_AT.value, value=now.isoformat()),
            ],
        )

    # ─────────────────────────────────────────────────────────────────────────
    # PROCESSING LOCK
    # ─────────────────────────────────────────────────────────────────────────

    async def read_lock(self, order_id: str) -> LockState:
        values = await self._read(RecordOwner.order(order_id), MetafieldKey.LOCK)
        raw = values[MetafieldKey.LOCK]
        if not raw:
            return LockState()
        try:
            return LockState.model_validate_json(raw)
        except ValidationError:
            # Unreadable lock: report it held with no timestamp so it counts as stale
            logger.warning("lock_state_unreadable", order_id=order_id, raw=raw)
            return LockState(held=True)

    async def write_lock(self, order_id: str, state: LockState) -> None:
        await self._write(
            RecordOwner.order(order_id),
            [
                MetafieldInput(
                    key=MetafieldKey.LOCK.value,
                    type=FieldType.JSON,
                    value=state.model_dump_json(),
                )
            ],
        )

    # ─────────────────────────────────────────────────────────────────────────
    # FULFILLED UNITS & ESIMS
    # ─────────────────────────────────────────────────────────────────────────

    async def get_fulfilled_units(self, order_id: str) -> set[str]:
        values = await self._read(RecordOwner.order(order_id), MetafieldKey.FULFILLED_UNITS)
        return set(split_lines(values[MetafieldKey.FULFILLED_UNITS]))

    async def record_esim(self, order_id: str, asset: CreatedAsset, unit_key: str) -> None:
        """Append a created eSIM and mark its unit fulfilled, in one write."""
        owner = RecordOwner.order(order_id)
        values = await self._read(
            owner, MetafieldKey.ESIM_ICCIDS, MetafieldKey.ESIM_UIDS, MetafieldKey.FULFILLED_UNITS
        )
        iccids = _append_unique(split_lines(values[MetafieldKey.ESIM_ICCIDS]), asset.iccid)
        uids = _append_unique(split_lines(values[MetafieldKey.ESIM_UIDS]), asset.asset_id)
        units = _append_unique(split_lines(values[MetafieldKey.FULFILLED_UNITS]), unit_key)

        fields = [
            MetafieldInput(
                key=MetafieldKey.ESIM_ICCIDS.value,
                type=FieldType.MULTI_LINE,
                value="\n".join(iccids),
            ),
            MetafieldInput(
                key=MetafieldKey.FULFILLED_UNITS.value,
                type=FieldType.MULTI_LINE,
                value="\n".join(units),
            ),
        ]
        if uids:
            fields.append(
                MetafieldInput(
                    key=MetafieldKey.ESIM_UIDS.value,
                    type=FieldType.MULTI_LINE,
                    value="\n".join(uids),
                )
            )
        await self._write(owner, fields)

    async def record_fulfilled_unit(self, order_id: str, unit_key: str) -> None:
        owner = RecordOwner.order(order_id)
        values = await self._read(owner, MetafieldKey.FULFILLED_UNITS)
        units = split_lines(values[MetafieldKey.FULFILLED_UNITS])
        if unit_key in units:
            return
        await self._write(
            owner,
            [
                MetafieldInput(
                    key=MetafieldKey.FULFILLED_UNITS.value,
                    type=FieldType.MULTI_LINE,
                    value="\n".join([*units, unit_key]),
                )
            ],
        )

    # ─────────────────────────────────────────────────────────────────────────
    # USAGE ALERTS
    # ─────────────────────────────────────────────────────────────────────────

    async def get_usage_alerts_sent(self, order_id: str) -> list[str]:
        values = await self._read(RecordOwner.order(order_id), MetafieldKey.USAGE_ALERTS_SENT)
        return split_lines(values[MetafieldKey.USAGE_ALERTS_SENT])

    async def mark_usage_alert_sent(self, order_id: str, key: str) -> None:
        """Append an alert key to the order's sent list (re-read first, append-only)."""
        key = key.strip()
        if not key:
            raise ValueError("mark_usage_alert_sent: missing key")

        current = await self.get_usage_alerts_sent(order_id)
        if key in current:
            return
        await self._write(
            RecordOwner.order(order_id),
            [
                MetafieldInput(
                    key=MetafieldKey.USAGE_ALERTS_SENT.value,
                    type=FieldType.MULTI_LINE,
                    value="\n".join([*current, key]),
                )
            ],
        )

    async def find_orders_with_esims(
        self, days_back: int, now: datetime | None = None
    ) -> list[OrderWithAssets]:
        """Orders created within the window that have at least one recorded eSIM."""
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=days_back)).date().isoformat()
        query = f"created_at:>='{since}' metafield:{self._namespace_key(MetafieldKey.ESIM_ICCIDS)}"

        records = await self._store.search_orders(
            query, [MetafieldKey.ESIM_ICCIDS.value, MetafieldKey.USAGE_ALERTS_SENT.value]
        )
        orders: list[OrderWithAssets] = []
        for record in records:
            iccids = split_lines(record.fields.get(MetafieldKey.ESIM_ICCIDS.value))
            if not iccids:
                continue
            orders.append(
                OrderWithAssets(
                    order_id=record.order_id,
                    name=record.name,
                    email=record.email,
                    first_name=record.first_name,
                    last_name=record.last_name,
                    iccids=iccids,
                    alerts_sent=split_lines(record.fields.get(MetafieldKey.USAGE_ALERTS_SENT.value)),
                )
            )
        return orders

    def _namespace_key(self, key: MetafieldKey) -> str:
        return f"{self._store.namespace}.{key.value}"

    # ─────────────────────────────────────────────────────────────────────────
    # CUSTOMER MAPPING
    # ─────────────────────────────────────────────────────────────────────────

    async def get_provisioning_customer_id(self, customer_id: str) -> str | None:
        values = await self._read(
            RecordOwner.customer(customer_id), MetafieldKey.PROVISIONING_CUSTOMER_ID
        )
        return (values[MetafieldKey.PROVISIONING_CUSTOMER_ID] or "").strip() or None

    async def save_provisioning_customer_id(self, customer_id: str, provisioning_id: str) -> None:
        await self._write(
            RecordOwner.customer(customer_id),
            [
                MetafieldInput(
                    key=MetafieldKey.PROVISIONING_CUSTOMER_ID.value,
                    value=str(provisioning_id),
                )
            ],
        )
