"""Request-scoped builders for the services behind each route.

Tests replace these through `app.dependency_overrides`.
"""

from esim_fulfillment.config import settings
from esim_fulfillment.notifications.registry import get_notifier_instance
from esim_fulfillment.providers.registry import get_provider_instance
from esim_fulfillment.services.orchestrator import FulfillmentOrchestrator
from esim_fulfillment.services.usage_alerts import UsageAlertScanner
from esim_fulfillment.stores.registry import get_store_instance


async def get_orchestrator() -> FulfillmentOrchestrator:
    """Build the orchestrator over the configured store, provider and notifier."""
    return FulfillmentOrchestrator(
        store=get_store_instance(),
        provider=get_provider_instance(),
        notifier=get_notifier_instance(),
        ops_email=settings.ops_email,
    )


async def get_usage_scanner() -> UsageAlertScanner:
    return UsageAlertScanner(
        store=get_store_instance(),
        provider=get_provider_instance(),
        notifier=get_notifier_instance(),
    )
