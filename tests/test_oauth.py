"""Shop domain validation, callback HMAC and token exchange"""

import hashlib
import hmac

import httpx
import pytest

from backend.core.errors import ExternalAPIError, ValidationError
from integrations.shopify.oauth import (
    exchange_code_for_token,
    validate_shop_domain,
    verify_oauth_hmac,
)


def sign(params, secret):
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class TestValidateShopDomain:

    def test_normalizes_case(self):
        assert validate_shop_domain(" Demo.MyShopify.com ") == "demo.myshopify.com"

    @pytest.mark.parametrize("shop", ["", "demo.com", "https://demo.myshopify.com", "demo.myshopify.com/admin"])
    def test_rejects_malformed(self, shop):
        with pytest.raises(ValidationError):
            validate_shop_domain(shop)


class TestVerifyOAuthHmac:

    def test_valid_signature(self):
        params = {"code": "abc123", "shop": "demo.myshopify.com", "state": "st8", "timestamp": "1700000000"}
        params["hmac"] = sign(params, "secret")
        assert verify_oauth_hmac(params, "secret") is True

    def test_tampered_params(self):
        params = {"code": "abc123", "shop": "demo.myshopify.com", "state": "st8"}
        params["hmac"] = sign(params, "secret")
        params["shop"] = "evil.myshopify.com"
        with pytest.raises(ValidationError):
            verify_oauth_hmac(params, "secret")

    def test_missing_hmac(self):
        with pytest.raises(ValidationError):
            verify_oauth_hmac({"shop": "demo.myshopify.com"}, "secret")


class TestExchangeCodeForToken:

    async def test_returns_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"access_token": "tok_1", "scope": "write_script_tags"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            payload = await exchange_code_for_token(http, "demo.myshopify.com", "abc123", "key", "secret")

        assert payload["access_token"] == "tok_1"
        assert seen["url"] == "https://demo.myshopify.com/admin/oauth/access_token"

    @pytest.mark.parametrize("response", [
        httpx.Response(400, json={"error": "invalid_request"}),
        httpx.Response(200, json={"scope": "read_products"}),
        httpx.Response(200, content=b"<html>oops</html>"),
    ])
    async def test_failures_raise_token_exchange(self, response):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as http:
            with pytest.raises(ExternalAPIError) as exc_info:
                await exchange_code_for_token(http, "demo.myshopify.com", "abc123", "key", "secret")

        assert exc_info.value.operation == "token-exchange"
