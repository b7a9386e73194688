"""ShopRegistry upserts and lazy storage initialization"""

import asyncio

import pytest

from backend.core.db import Database
from integrations.shopify.models import CustomerSession, InstallationMechanism, InstallationStatus, WidgetInstallation
from integrations.shopify.registry import ShopRegistry

SHOP = "demo.myshopify.com"


class TestShopAccounts:

    async def test_find_unknown_shop(self, registry):
        assert await registry.find_by_domain(SHOP) is None

    async def test_upsert_creates_then_updates(self, registry):
        created = await registry.upsert(SHOP, {"access_token": "tok_1"})
        assert created.access_token == "tok_1"
        assert created.widget_installed is False

        updated = await registry.upsert(SHOP, {"access_token": "tok_2", "storefront_access_token": "sf"})
        assert updated.access_token == "tok_2"
        assert updated.storefront_access_token == "sf"

        found = await registry.find_by_domain(SHOP)
        assert found.access_token == "tok_2"

    async def test_create_requires_access_token(self, registry):
        with pytest.raises(ValueError):
            await registry.upsert(SHOP, {"widget_installed": True})

    async def test_rejects_unknown_fields(self, registry):
        with pytest.raises(ValueError):
            await registry.upsert(SHOP, {"access_token": "tok_1", "plan": "basic"})

    async def test_concurrent_upserts_keep_one_row(self, registry):
        await asyncio.gather(*(
            registry.upsert(SHOP, {"access_token": f"tok_{i}"}) for i in range(5)
        ))
        account = await registry.find_by_domain(SHOP)
        assert account is not None
        assert account.access_token.startswith("tok_")


class TestWidgetInstallations:

    def _installation(self, **overrides):
        values = dict(
            shop_domain=SHOP,
            mechanism=InstallationMechanism.PLATFORM_HOOK,
            reference_id="1001",
            loader_url="https://genie.test/api/widget-loader.js?shop=demo.myshopify.com",
            snippet="<script></script>",
        )
        values.update(overrides)
        return WidgetInstallation(**values)

    async def test_upsert_replaces_record(self, registry):
        await registry.upsert_installation(self._installation())
        await registry.upsert_installation(self._installation(
            mechanism=InstallationMechanism.ASSET_INJECTION,
            reference_id=None,
            theme_id="1",
        ))

        installation = await registry.find_installation(SHOP)
        assert installation.mechanism == InstallationMechanism.ASSET_INJECTION
        assert installation.reference_id is None
        assert installation.theme_id == "1"
        assert installation.status == InstallationStatus.ACTIVE

    async def test_summary_shape(self, registry):
        stored = await registry.upsert_installation(self._installation())
        summary = stored.to_summary()
        assert summary["mechanism"] == "platform-hook"
        assert summary["referenceId"] == "1001"
        assert summary["scriptUrl"].startswith("https://genie.test/")


class TestCustomerSessions:

    async def test_upsert_is_keyed_by_shop_and_email(self, registry):
        await registry.upsert_customer_session(CustomerSession(
            shop_domain=SHOP, customer_email="ada@example.com", customer_access_token="cat_1",
        ))
        await registry.upsert_customer_session(CustomerSession(
            shop_domain=SHOP, customer_email="ada@example.com", customer_access_token="cat_2", session_id="s2",
        ))
        await registry.upsert_customer_session(CustomerSession(
            shop_domain="other.myshopify.com", customer_email="ada@example.com", customer_access_token="cat_3",
        ))

        found = await registry.find_customer_session(SHOP, "ada@example.com")
        assert found.customer_access_token == "cat_2"
        assert found.session_id == "s2"
        other = await registry.find_customer_session("other.myshopify.com", "ada@example.com")
        assert other.customer_access_token == "cat_3"

    async def test_find_unknown_customer(self, registry):
        assert await registry.find_customer_session(SHOP, "nobody@example.com") is None


class TestDatabase:

    async def test_initializes_once_under_concurrency(self, db_url):
        database = Database(db_url)
        try:
            factories = await asyncio.gather(*(database.connect() for _ in range(5)))
            assert all(factory is factories[0] for factory in factories)
            assert database.is_initialized
        finally:
            await database.dispose()

    async def test_registry_initializes_on_first_use(self, db_url):
        database = Database(db_url)
        registry = ShopRegistry(database)
        assert not database.is_initialized
        try:
            await registry.find_by_domain(SHOP)
            assert database.is_initialized
        finally:
            await database.dispose()
