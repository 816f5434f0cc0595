"""Store registry - creates the configured order record store."""

from esim_fulfillment.config import settings
from esim_fulfillment.stores.base import BaseRecordStore

_store_instance: BaseRecordStore | None = None


def get_store_instance() -> BaseRecordStore:
    """Get or create the Shopify record store."""
    global _store_instance

    if _store_instance is None:
        from esim_fulfillment.stores.shopify import ShopifyRecordStore

        _store_instance = ShopifyRecordStore(
            shop_domain=settings.shopify_shop_domain,
            access_token=settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            namespace=settings.metafield_namespace,
        )
    return _store_instance


async def close_store() -> None:
    """Close the store transport and clear the cache."""
    if _store_instance is not None:
        await _store_instance.close()
    clear_store_cache()


def clear_store_cache() -> None:
    """Clear store cache."""
    global _store_instance
    _store_instance = None
