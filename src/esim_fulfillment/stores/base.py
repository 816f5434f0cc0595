"""Order record store interface.

The commerce platform is the only persistent store available: idempotency
flags, processing locks, recorded eSIMs and usage-alert markers all live in
key/value metafields on the order (or customer) record. Implementations only
move values; `OrderRecordRepository` gives them meaning.
"""

from abc import ABC, abstractmethod
from enum import Enum

from pydantic import BaseModel

from esim_fulfillment.models.fulfillment import VariantConfig


class OwnerType(str, Enum):
    """Kind of record a metafield hangs off."""

    ORDER = "Order"
    CUSTOMER = "Customer"
    PRODUCT_VARIANT = "ProductVariant"


class RecordOwner(BaseModel):
    """Reference to a record that carries metafields."""

    type: OwnerType
    id: str

    @classmethod
    def order(cls, order_id: str) -> "RecordOwner":
        return cls(type=OwnerType.ORDER, id=str(order_id))

    @classmethod
    def customer(cls, customer_id: str) -> "RecordOwner":
        return cls(type=OwnerType.CUSTOMER, id=str(customer_id))


class FieldType(str, Enum):
    """Metafield value types used by the service."""

    SINGLE_LINE = "single_line_text_field"
    MULTI_LINE = "multi_line_text_field"
    JSON = "json"


class MetafieldInput(BaseModel):
    """One value to write."""

    key: str
    type: FieldType = FieldType.SINGLE_LINE
    value: str


class UserError(BaseModel):
    """Validation error reported by the store for a write."""

    field: list[str] | None = None
    message: str


class OrderRecord(BaseModel):
    """An order returned by a search, with the requested metafield values."""

    order_id: str
    name: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    fields: dict[str, str | None] = {}


class BaseRecordStore(ABC):
    """Key/value metafield access per record, plus order search."""

    name: str
    namespace: str = "custom"

    @abstractmethod
    async def read_fields(self, owner: RecordOwner, keys: list[str]) -> dict[str, str | None]:
        """Read metafield values; missing fields map to None.

        Raises:
            StoreException: the record could not be read
        """

    @abstractmethod
    async def write_fields(self, owner: RecordOwner, fields: list[MetafieldInput]) -> list[UserError]:
        """Write metafield values in one request.

        Returns:
            User errors reported by the store (empty on success)

        Raises:
            StoreException: transport or protocol failure
        """

    @abstractmethod
    async def search_orders(self, query: str, keys: list[str]) -> list[OrderRecord]:
        """Find orders matching a store search query, newest first."""

    @abstractmethod
    async def get_variant_config(self, variant_id: str) -> VariantConfig:
        """Read the plan mapping and action kind configured on a product variant."""

    async def close(self) -> None:
        """Release transport resources."""
