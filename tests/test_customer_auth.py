"""Shopper login through the Customer Account API"""

from urllib.parse import parse_qs, urlparse

import pytest

from backend.core.errors import ExternalAPIError, NotFoundError, ValidationError
from integrations.shopify.customer_auth import AUTHORIZE_URL, SCOPES, UNKNOWN_EMAIL, CustomerAccountAuth

from conftest import PUBLIC_BASE_URL, SHOP

APP_URL = "https://app.test"


@pytest.fixture
def customer_auth(registry, client_factory):
    return CustomerAccountAuth(registry, client_factory, PUBLIC_BASE_URL, APP_URL)


@pytest.fixture
async def configured_shop(registry):
    return await registry.upsert(SHOP, {
        "access_token": "tok_1",
        "customer_account_client_id": "cust-client",
        "customer_account_client_secret": "cust-secret",
    })


# =============================================================================
# Login redirect
# =============================================================================

class TestLoginUrl:

    async def test_authorize_url_when_configured(self, customer_auth, configured_shop):
        url = await customer_auth.login_url(SHOP)

        assert url.startswith(AUTHORIZE_URL + "?")
        params = parse_qs(urlparse(url).query)
        assert params["client_id"] == ["cust-client"]
        assert params["scope"] == [SCOPES]
        assert params["redirect_uri"] == [f"{PUBLIC_BASE_URL}/api/customer-auth/callback"]
        assert params["shop"] == [SHOP]
        assert len(params["state"][0]) >= 16

    async def test_state_differs_per_login(self, customer_auth, configured_shop):
        first = parse_qs(urlparse(await customer_auth.login_url(SHOP)).query)["state"]
        second = parse_qs(urlparse(await customer_auth.login_url(SHOP)).query)["state"]
        assert first != second

    async def test_store_login_without_credentials(self, customer_auth, registry):
        await registry.upsert(SHOP, {"access_token": "tok_1"})

        url = await customer_auth.login_url(SHOP, return_url="https://demo.myshopify.com/cart")

        assert url.startswith(f"https://{SHOP}/account/login?")
        assert parse_qs(urlparse(url).query)["return_url"] == ["https://demo.myshopify.com/cart"]

    async def test_store_login_default_return_url(self, customer_auth, registry):
        await registry.upsert(SHOP, {"access_token": "tok_1"})

        url = await customer_auth.login_url(SHOP)

        assert parse_qs(urlparse(url).query)["return_url"] == [f"{APP_URL}/chat"]

    async def test_unknown_shop(self, customer_auth):
        with pytest.raises(NotFoundError):
            await customer_auth.login_url(SHOP)

    async def test_invalid_shop(self, customer_auth):
        with pytest.raises(ValidationError):
            await customer_auth.login_url("evil.example.com")


# =============================================================================
# Callback
# =============================================================================

class TestCompleteLogin:

    async def test_stores_customer_token(self, customer_auth, configured_shop, registry, fake_shopify):
        customer = await customer_auth.complete_login("cust-code", SHOP)

        assert customer.customer_email == "ada@example.com"
        assert customer.customer_id == "gid://shopify/Customer/42"
        assert customer.customer_access_token == "cat_1"
        assert customer.session_id == "sess_1"
        assert fake_shopify.count("POST", "customer/oauth/token") == 1
        assert fake_shopify.count("POST", "customer/graphql.json") == 1

        stored = await registry.find_customer_session(SHOP, "ada@example.com")
        assert stored.customer_access_token == "cat_1"

    async def test_second_login_replaces_token(self, customer_auth, configured_shop, registry, fake_shopify):
        await customer_auth.complete_login("cust-code", SHOP)
        fake_shopify.customer_access_token = "cat_2"

        await customer_auth.complete_login("cust-code-2", SHOP)

        stored = await registry.find_customer_session(SHOP, "ada@example.com")
        assert stored.customer_access_token == "cat_2"

    async def test_customer_lookup_failure_uses_placeholder_email(self, customer_auth, configured_shop, fake_shopify):
        fake_shopify.customer_info_status = 401

        customer = await customer_auth.complete_login("cust-code", SHOP)

        assert customer.customer_email == UNKNOWN_EMAIL
        assert customer.customer_id is None
        assert customer.customer_access_token == "cat_1"

    async def test_exchange_failure(self, customer_auth, configured_shop, registry, fake_shopify):
        fake_shopify.customer_token_status = 400

        with pytest.raises(ExternalAPIError) as exc_info:
            await customer_auth.complete_login("bad-code", SHOP)

        assert exc_info.value.operation == "customer-token-exchange"
        assert fake_shopify.count("POST", "customer/graphql.json") == 0
        assert await registry.find_customer_session(SHOP, "ada@example.com") is None

    @pytest.mark.parametrize("code, shop", [(None, SHOP), ("cust-code", None), ("", SHOP)])
    async def test_missing_parameters(self, customer_auth, fake_shopify, code, shop):
        with pytest.raises(ValidationError):
            await customer_auth.complete_login(code, shop)
        assert fake_shopify.calls == []

    async def test_not_configured(self, customer_auth, registry, fake_shopify):
        await registry.upsert(SHOP, {"access_token": "tok_1"})

        with pytest.raises(NotFoundError) as exc_info:
            await customer_auth.complete_login("cust-code", SHOP)

        assert exc_info.value.resource == "customer-account"
        assert fake_shopify.calls == []
