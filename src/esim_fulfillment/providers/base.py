"""Base provider abstract class defining the provisioning interface."""

from abc import ABC, abstractmethod

from esim_fulfillment.models.esim import (
    CreatedAsset,
    CustomerProfile,
    Plan,
    ProvisionedAsset,
    ProvisioningCustomer,
)


class BaseProvider(ABC):
    """Abstract base class for eSIM provisioning providers.

    Every method is a single upstream call. Failures raise `ProviderException`
    (or a subclass); none of these methods retries a call that creates
    something on the provider side.
    """

    name: str

    # ─────────────────────────────────────────────────────────────────────────
    # CUSTOMERS
    # ─────────────────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_customer(self, profile: CustomerProfile, tag: str = "") -> str:
        """Create a provider customer.

        Args:
            profile: Buyer profile
            tag: Trace tag for cross-system correlation

        Returns:
            The new provider customer id
        """

    @abstractmethod
    async def get_customer(self, customer_id: str) -> ProvisioningCustomer:
        """Get a customer with the eSIMs issued to them."""

    # ─────────────────────────────────────────────────────────────────────────
    # ESIMS
    # ─────────────────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_esim(self, plan_type_id: str, customer_id: str, tag: str = "") -> CreatedAsset:
        """Issue a new eSIM carrying one plan of the given type.

        Args:
            plan_type_id: Catalog plan id
            customer_id: Provider customer that will own the eSIM
            tag: Trace tag for cross-system correlation

        Returns:
            Identifiers and installation data of the new eSIM
        """

    @abstractmethod
    async def get_esim(self, iccid: str) -> ProvisionedAsset:
        """Get eSIM details by ICCID."""

    @abstractmethod
    async def get_esim_plans(self, iccid: str) -> list[Plan]:
        """List the plans attached to an eSIM."""

    @abstractmethod
    async def create_top_up(self, iccid: str, plan_type_id: str, tag: str = "") -> Plan:
        """Attach a new plan to an existing eSIM."""

    async def close(self) -> None:
        """Release transport resources."""
