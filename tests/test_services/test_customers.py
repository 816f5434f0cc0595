"""Tests for provisioning customer resolution."""

import pytest

from esim_fulfillment.core.exceptions import ProviderException
from esim_fulfillment.services.customers import CustomerResolver
from esim_fulfillment.services.records import OrderRecordRepository
from esim_fulfillment.stores.base import OwnerType


@pytest.fixture
def resolver(store, provider) -> CustomerResolver:
    return CustomerResolver(OrderRecordRepository(store), provider)


async def resolve(resolver: CustomerResolver, customer_id: str | None) -> str:
    return await resolver.resolve(
        customer_id=customer_id,
        email="buyer@example.com",
        first_name="Ada",
        last_name="Lovelace",
        country_code="FR",
        trace_tag="shopify-order-1001",
    )


class TestCustomerResolver:
    """Test the commerce -> provisioning customer mapping."""

    @pytest.mark.asyncio
    async def test_creates_and_stores_mapping(self, resolver, store, provider) -> None:
        customer_id = await resolve(resolver, "42")

        assert customer_id == "maya-cust-1"
        assert provider.calls == [("create_customer", ("buyer@example.com", "shopify-order-1001"))]
        assert store.records[(OwnerType.CUSTOMER, "42")]["provisioning_customer_id"] == "maya-cust-1"

    @pytest.mark.asyncio
    async def test_reuses_stored_mapping(self, resolver, store, provider) -> None:
        store.records[(OwnerType.CUSTOMER, "42")]["provisioning_customer_id"] = "maya-existing"

        customer_id = await resolve(resolver, "42")

        assert customer_id == "maya-existing"
        assert provider.count("create_customer") == 0

    @pytest.mark.asyncio
    async def test_guest_gets_new_customer_every_time(self, resolver, store, provider) -> None:
        first = await resolve(resolver, None)
        second = await resolve(resolver, None)

        assert first != second
        assert provider.count("create_customer") == 2
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_creation_failure_propagates(self, resolver, provider) -> None:
        provider.fail_create_customer = True

        with pytest.raises(ProviderException):
            await resolve(resolver, "42")

    @pytest.mark.asyncio
    async def test_mapping_read_failure_is_a_miss(self, resolver, store, provider) -> None:
        store.fail_read_keys.add("provisioning_customer_id")

        customer_id = await resolve(resolver, "42")

        assert customer_id == "maya-cust-1"
        assert provider.count("create_customer") == 1

    @pytest.mark.asyncio
    async def test_mapping_write_failure_is_not_fatal(self, resolver, store) -> None:
        store.fail_write_keys.add("provisioning_customer_id")

        customer_id = await resolve(resolver, "42")

        assert customer_id == "maya-cust-1"
