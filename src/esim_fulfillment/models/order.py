"""Commerce order models.

`ShopifyOrderPayload` mirrors the subset of the `orders/paid` webhook body the
service reads; `to_order()` applies every defaulting rule once so the rest of
the code works with a fully-populated `Order`.
"""

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from esim_fulfillment.config import settings

# ─────────────────────────────────────────────────────────────────────────────
# WEBHOOK PAYLOAD
# ─────────────────────────────────────────────────────────────────────────────


class ShopifyAddress(BaseModel):
    """Billing or shipping address."""

    model_config = ConfigDict(extra="ignore")

    first_name: str | None = None
    last_name: str | None = None
    country_code: str | None = None


class ShopifyCustomer(BaseModel):
    """Customer reference embedded in an order."""

    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    default_address: ShopifyAddress | None = None


class ShopifyLineItem(BaseModel):
    """Line item as sent by Shopify."""

    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    variant_id: int | str | None = None
    quantity: int = 1
    title: str | None = None


class ShopifyOrderPayload(BaseModel):
    """`orders/paid` webhook body."""

    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    name: str | None = None
    email: str | None = None
    contact_email: str | None = None
    customer: ShopifyCustomer | None = None
    billing_address: ShopifyAddress | None = None
    shipping_address: ShopifyAddress | None = None
    line_items: list[ShopifyLineItem] = []

    def to_order(self, default_country_code: str, shop_domain: str | None = None) -> "Order":
        """Build the normalized order, applying fallbacks for missing fields."""
        customer = self.customer or ShopifyCustomer()
        addresses = [
            a
            for a in (self.billing_address, self.shipping_address, customer.default_address)
            if a is not None
        ]

        def first_of(*values: str | None) -> str:
            for value in values:
                if value and value.strip():
                    return value.strip()
            return ""

        country = first_of(*(a.country_code for a in addresses)) or default_country_code

        line_items = [
            LineItem(
                line_item_id=str(item.id) if item.id is not None else str(index),
                variant_id=str(item.variant_id) if item.variant_id is not None else None,
                quantity=item.quantity,
                title=item.title or "",
            )
            for index, item in enumerate(self.line_items)
            if item.quantity > 0
        ]

        return Order(
            order_id=str(self.id) if self.id is not None else "",
            name=self.name or "",
            email=first_of(self.email, self.contact_email, customer.email),
            first_name=first_of(customer.first_name, *(a.first_name for a in addresses)),
            last_name=first_of(customer.last_name, *(a.last_name for a in addresses)),
            country_code=country.upper(),
            customer_id=str(customer.id) if customer.id is not None else None,
            shop_domain=shop_domain,
            line_items=line_items,
        )


# ─────────────────────────────────────────────────────────────────────────────
# NORMALIZED ORDER
# ─────────────────────────────────────────────────────────────────────────────


class LineItem(BaseModel):
    """Single purchased line of an order."""

    line_item_id: str
    variant_id: str | None = None
    quantity: PositiveInt = 1
    title: str = ""

    def unit_key(self, unit_index: int) -> str:
        """Stable identifier of one unit of this line, used to skip it on retry."""
        return f"{self.line_item_id}:{unit_index}"


class Order(BaseModel):
    """Paid commerce order, immutable once received."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    name: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    country_code: str = "US"
    customer_id: str | None = None  # Commerce customer id; None for guest checkout
    shop_domain: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)

    @field_validator("country_code")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def buyer_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def trace_tag(self) -> str:
        return f"{settings.trace_tag_prefix}-{self.order_id}"
