"""Notifier registry - creates the configured email channel."""

from esim_fulfillment.config import settings
from esim_fulfillment.notifications.base import BaseNotifier

_notifier_instance: BaseNotifier | None = None


def get_notifier_instance() -> BaseNotifier:
    """Get or create the email notifier."""
    global _notifier_instance

    if _notifier_instance is None:
        from esim_fulfillment.notifications.resend import ResendNotifier

        _notifier_instance = ResendNotifier(
            api_key=settings.email_api_key,
            sender=settings.email_from,
            base_url=settings.email_api_url,
        )
    return _notifier_instance


async def close_notifier() -> None:
    """Close the notifier transport and clear the cache."""
    if _notifier_instance is not None:
        await _notifier_instance.close()
    clear_notifier_cache()


def clear_notifier_cache() -> None:
    """Clear notifier cache."""
    global _notifier_instance
    _notifier_instance = None
