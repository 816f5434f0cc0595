"""Commerce customer -> provisioning customer resolution."""

from esim_fulfillment.core.exceptions import StoreException
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.models.esim import CustomerProfile
from esim_fulfillment.providers.base import BaseProvider
from esim_fulfillment.services.records import OrderRecordRepository

logger = get_logger(__name__)


class CustomerResolver:
    """Reuse the provider customer stored on the commerce customer, or create one."""

    def __init__(self, records: OrderRecordRepository, provider: BaseProvider):
        self._records = records
        self._provider = provider

    async def resolve(
        self,
        customer_id: str | None,
        email: str,
        first_name: str,
        last_name: str,
        country_code: str,
        trace_tag: str,
    ) -> str:
        """Return the provisioning customer id for a buyer.

        Guest checkouts have no commerce customer id, so nothing can be cached
        and every guest order gets its own provider customer.

        Raises:
            ProviderException: the provider customer could not be created
        """
        if customer_id:
            try:
                cached = await self._records.get_provisioning_customer_id(customer_id)
            except StoreException as e:
                logger.warning("customer_mapping_read_failed", customer_id=customer_id, error=str(e))
                cached = None
            if cached:
                logger.info("customer_mapping_hit", customer_id=customer_id, provisioning_id=cached)
                return cached

        provisioning_id = await self._provider.create_customer(
            CustomerProfile(
                email=email,
                first_name=first_name,
                last_name=last_name,
                country_code=country_code,
            ),
            tag=trace_tag,
        )
        logger.info(
            "provisioning_customer_created",
            customer_id=customer_id,
            provisioning_id=provisioning_id,
            guest=customer_id is None,
        )

        if customer_id:
            try:
                await self._records.save_provisioning_customer_id(customer_id, provisioning_id)
            except StoreException as e:
                # The provider customer exists and is used for this order regardless
                logger.error(
                    "customer_mapping_write_failed",
                    customer_id=customer_id,
                    provisioning_id=provisioning_id,
                    error=str(e),
                )

        return provisioning_id
