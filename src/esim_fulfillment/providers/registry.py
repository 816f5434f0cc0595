"""Provider registry - creates the configured provisioning provider."""

from esim_fulfillment.config import settings
from esim_fulfillment.providers.base import BaseProvider

_provider_instances: dict[str, BaseProvider] = {}


def get_provider_instance(provider_name: str | None = None) -> BaseProvider:
    """Get or create a provider instance."""
    provider_name = (provider_name or settings.provisioning_provider).lower()

    if provider_name in _provider_instances:
        return _provider_instances[provider_name]

    instance: BaseProvider

    if provider_name == "maya":
        from esim_fulfillment.providers.maya import MayaProvider

        instance = MayaProvider(auth=settings.maya_auth, base_url=settings.maya_base_url)
    else:
        raise KeyError(f"Unknown provider: {provider_name}")

    _provider_instances[provider_name] = instance
    return instance


async def close_providers() -> None:
    """Close provider transports and clear the cache."""
    for instance in _provider_instances.values():
        await instance.close()
    clear_provider_cache()


def clear_provider_cache() -> None:
    """Clear provider cache."""
    _provider_instances.clear()
