"""Shopify Admin GraphQL implementation of the order record store."""

from typing import Any

from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import ConfigurationException, StoreException
from esim_fulfillment.core.http import HTTPClient
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.core.utils import MultiCache
from esim_fulfillment.models.fulfillment import VariantConfig
from esim_fulfillment.stores.base import (
    BaseRecordStore,
    MetafieldInput,
    OrderRecord,
    OwnerType,
    RecordOwner,
    UserError,
)

logger = get_logger(__name__)

METAFIELDS_SET_MUTATION = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    userErrors { field message }
  }
}
"""


def to_gid(owner: RecordOwner) -> str:
    """`RecordOwner(ORDER, "123")` -> `gid://shopify/Order/123`."""
    if owner.id.startswith("gid://"):
        return owner.id
    return f"gid://shopify/{owner.type.value}/{owner.id}"


def from_gid(gid: str) -> str:
    """`gid://shopify/Order/123` -> `123`."""
    return gid.rsplit("/", 1)[-1] if gid else ""


def _metafield_selection(keys: list[str]) -> tuple[str, str]:
    """GraphQL variable declarations and aliased selections for a list of keys."""
    declarations = "".join(f", $k{i}: String!" for i in range(len(keys)))
    selections = "\n".join(
        f"f{i}: metafield(namespace: $namespace, key: $k{i}) {{ value }}"
        for i in range(len(keys))
    )
    return declarations, selections


def _metafield_values(node: dict[str, Any], keys: list[str]) -> dict[str, str | None]:
    values: dict[str, str | None] = {}
    for i, key in enumerate(keys):
        field = node.get(f"f{i}") or {}
        values[key] = field.get("value")
    return values


def _first_non_empty(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


class ShopifyRecordStore(BaseRecordStore):
    """Metafields on Shopify orders, customers and product variants."""

    name = "shopify"

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str | None = None,
        namespace: str | None = None,
    ):
        if not shop_domain.strip():
            raise ConfigurationException("Missing SHOPIFY_SHOP_DOMAIN")
        if not access_token.strip():
            raise ConfigurationException("Missing SHOPIFY_ACCESS_TOKEN")

        self.shop_domain = shop_domain.strip()
        self.api_version = (api_version or settings.shopify_api_version).strip()
        self.namespace = namespace or settings.metafield_namespace
        self._client = HTTPClient(
            base_url=f"https://{self.shop_domain}/admin/api/{self.api_version}",
            service=self.name,
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token.strip(),
            },
            error_class=StoreException,
        )
        self._variant_configs = MultiCache(ttl=settings.variant_cache_ttl)

    async def close(self) -> None:
        await self._client.close()

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a GraphQL document and return its `data`.

        Metafield writes are idempotent (same value, same key), so every call
        here is safe to retry on network errors.
        """
        response = await self._client.post(
            "/graphql.json",
            json={"query": query, "variables": variables},
            idempotent=True,
        )
        if not isinstance(response, dict) or response.get("errors"):
            errors = response.get("errors") if isinstance(response, dict) else response
            logger.error("shopify_graphql_error", errors=errors)
            raise StoreException(
                message="Shopify GraphQL returned errors",
                service=self.name,
                upstream_message=str(errors),
            )
        return response.get("data") or {}

    # ─────────────────────────────────────────────────────────────────────────
    # METAFIELDS
    # ─────────────────────────────────────────────────────────────────────────

    async def read_fields(self, owner: RecordOwner, keys: list[str]) -> dict[str, str | None]:
        if not keys:
            return {}

        declarations, selections = _metafield_selection(keys)
        query = f"""
        query ReadMetafields($id: ID!, $namespace: String!{declarations}) {{
          node(id: $id) {{
            ... on HasMetafields {{
              {selections}
            }}
          }}
        }}
        """
        variables: dict[str, Any] = {"id": to_gid(owner), "namespace": self.namespace}
        variables.update({f"k{i}": key for i, key in enumerate(keys)})

        data = await self._graphql(query, variables)
        node = data.get("node")
        if node is None:
            raise StoreException(
                message=f"{owner.type.value} {owner.id} not found",
                service=self.name,
                upstream_code="404",
            )
        return _metafield_values(node, keys)

    async def write_fields(self, owner: RecordOwner, fields: list[MetafieldInput]) -> list[UserError]:
        if not fields:
            return []

        owner_gid = to_gid(owner)
        variables = {
            "metafields": [
                {
                    "ownerId": owner_gid,
                    "namespace": self.namespace,
                    "key": f.key,
                    "type": f.type.value,
                    "value": f.value,
                }
                for f in fields
            ]
        }
        data = await self._graphql(METAFIELDS_SET_MUTATION, variables)
        raw_errors = (data.get("metafieldsSet") or {}).get("userErrors") or []
        user_errors = [UserError.model_validate(e) for e in raw_errors]
        if user_errors:
            logger.warning(
                "shopify_metafield_user_errors",
                owner=owner_gid,
                keys=[f.key for f in fields],
                user_errors=[e.message for e in user_errors],
            )
        return user_errors

    # ─────────────────────────────────────────────────────────────────────────
    # SEARCH
    # ─────────────────────────────────────────────────────────────────────────

    async def search_orders(self, query: str, keys: list[str]) -> list[OrderRecord]:
        """Search orders with cursor pagination, bounded by `order_search_max_pages`."""
        declarations, selections = _metafield_selection(keys)
        document = f"""
        query SearchOrders($first: Int!, $after: String, $query: String!, $namespace: String!{declarations}) {{
          orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT, reverse: true) {{
            pageInfo {{ hasNextPage endCursor }}
            edges {{
              node {{
                id
                name
                email
                customer {{ firstName lastName }}
                billingAddress {{ firstName lastName }}
                shippingAddress {{ firstName lastName }}
                {selections}
              }}
            }}
          }}
        }}
        """
        variables: dict[str, Any] = {
            "first": settings.order_search_page_size,
            "after": None,
            "query": query,
            "namespace": self.namespace,
        }
        variables.update({f"k{i}": key for i, key in enumerate(keys)})

        records: list[OrderRecord] = []
        for _ in range(settings.order_search_max_pages):
            data = await self._graphql(document, variables)
            orders = data.get("orders") or {}
            for edge in orders.get("edges") or []:
                record = self._parse_order_node(edge.get("node") or {}, keys)
                if record is not None:
                    records.append(record)

            page_info = orders.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            variables["after"] = page_info.get("endCursor")
        else:
            logger.warning(
                "order_search_truncated",
                query=query,
                max_pages=settings.order_search_max_pages,
                records=len(records),
            )

        return records

    def _parse_order_node(self, node: dict[str, Any], keys: list[str]) -> OrderRecord | None:
        order_id = from_gid(node.get("id") or "")
        if not order_id:
            return None

        customer = node.get("customer") or {}
        billing = node.get("billingAddress") or {}
        shipping = node.get("shippingAddress") or {}
        return OrderRecord(
            order_id=order_id,
            name=node.get("name") or "",
            email=(node.get("email") or "").strip(),
            first_name=_first_non_empty(
                customer.get("firstName"), billing.get("firstName"), shipping.get("firstName")
            ),
            last_name=_first_non_empty(
                customer.get("lastName"), billing.get("lastName"), shipping.get("lastName")
            ),
            fields=_metafield_values(node, keys),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # CATALOG
    # ─────────────────────────────────────────────────────────────────────────

    async def get_variant_config(self, variant_id: str) -> VariantConfig:
        """Read plan id and product type metafields of a variant, cached for a short TTL."""
        if self._variant_configs.is_valid(variant_id):
            return self._variant_configs.get(variant_id)  # type: ignore[no-any-return]

        plan_key = settings.variant_plan_field
        action_key = settings.variant_action_field
        values = await self.read_fields(
            RecordOwner(type=OwnerType.PRODUCT_VARIANT, id=variant_id),
            [plan_key, action_key],
        )
        config = VariantConfig(
            plan_id=(values.get(plan_key) or "").strip() or None,
            raw_action=(values.get(action_key) or "").strip() or None,
        )
        self._variant_configs.set(variant_id, config)
        return config
