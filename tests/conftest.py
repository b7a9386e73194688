"""
Shared fixtures: temporary SQLite storage, a fake Shopify API served through
httpx.MockTransport and a scripted language model.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from backend.core.config import Settings
from backend.core.db import Database
from backend.core.errors import ExternalAPIError
from integrations.shopify.client import ShopifyClientFactory
from integrations.shopify.provisioner import LAYOUT_ASSET_KEY, WidgetProvisioner
from integrations.shopify.registry import ShopRegistry

API_VERSION = "2025-07"
PUBLIC_BASE_URL = "https://genie.test"
SHOP = "demo.myshopify.com"

DEFAULT_LAYOUT = "<html>\n  <head></head>\n  <body>\n    {{ content_for_layout }}\n  </body>\n</html>\n"


# =============================================================================
# Fake Shopify
# =============================================================================

class FakeShopify:
    """
    In-memory Shopify Admin, Storefront and Customer Account APIs.

    Every request is recorded in `calls` as (method, resource) where resource
    is the path after the API version (or the OAuth path).
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.down = False
        self.delay = 0.0

        self.token_status = 200
        self.access_token = "tok_1"

        self.script_tag_status = 201
        self.script_tags: List[Dict[str, Any]] = []
        self._next_tag_id = 1000

        self.themes: List[Dict[str, Any]] = [{"id": 1, "name": "Dawn", "role": "main"}]
        self.assets: Dict[tuple, str] = {(1, LAYOUT_ASSET_KEY): DEFAULT_LAYOUT}
        self.asset_write_status = 200

        self.products: List[Dict[str, Any]] = []
        self.policies: List[Dict[str, Any]] = []
        self.cart: Optional[Dict[str, Any]] = None
        self.storefront_token = "sf_tok_1"

        self.customer_token_status = 200
        self.customer_access_token = "cat_1"
        self.customer_info_status = 200
        self.customer: Optional[Dict[str, Any]] = {
            "id": "gid://shopify/Customer/42",
            "email": "ada@example.com",
            "firstName": "Ada",
            "lastName": "Lovelace",
        }

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle_async)

    def count(self, method: str, resource: str) -> int:
        return sum(1 for call in self.calls if call == (method, resource))

    def layout(self, theme_id: int = 1) -> str:
        return self.assets[(theme_id, LAYOUT_ASSET_KEY)]

    async def handle_async(self, request: httpx.Request) -> httpx.Response:
        if self.delay and "oauth" not in request.url.path:
            await asyncio.sleep(self.delay)
        return self.handle(request)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/admin/oauth/access_token"):
            self.calls.append((request.method, "oauth/access_token"))
            return self._token(request)
        if path.endswith("/customer_account/oauth/token"):
            self.calls.append((request.method, "customer/oauth/token"))
            return self._customer_token(request)
        if request.url.host == "customeraccount.shopify.com":
            self.calls.append((request.method, "customer/graphql.json"))
            return self._customer_info(request)

        resource = path.split(f"/{API_VERSION}/", 1)[-1]
        self.calls.append((request.method, resource))

        if self.down:
            return httpx.Response(503, json={"errors": "Service unavailable"})

        if resource == "graphql.json":
            return self._graphql(request, storefront=path.startswith("/api/"))
        if resource == "script_tags.json":
            return self._script_tags(request)
        if resource.startswith("script_tags/"):
            return self._delete_script_tag(resource)
        if resource == "themes.json":
            return httpx.Response(200, json={"themes": self.themes})
        if resource.startswith("themes/") and resource.endswith("/assets.json"):
            return self._asset(request, int(resource.split("/")[1]))
        if resource == "policies.json":
            return httpx.Response(200, json={"policies": self.policies})
        if resource == "shop.json":
            return httpx.Response(200, json={"shop": {"id": 1, "name": "Demo Store", "currency": "USD"}})
        if resource in ("products.json", "customers.json", "orders.json"):
            return httpx.Response(200, json={resource.split(".")[0]: []})

        return httpx.Response(404, json={"errors": "Not Found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_request"})
        return httpx.Response(200, json={"access_token": self.access_token, "scope": "write_script_tags"})

    def _customer_token(self, request: httpx.Request) -> httpx.Response:
        if self.customer_token_status != 200:
            return httpx.Response(self.customer_token_status, json={"error": "invalid_grant"})
        return httpx.Response(200, json={
            "access_token": self.customer_access_token,
            "session_id": "sess_1",
            "expires_in": 3600,
        })

    def _customer_info(self, request: httpx.Request) -> httpx.Response:
        if self.customer_info_status != 200:
            return httpx.Response(self.customer_info_status, json={"errors": "Unauthorized"})
        return httpx.Response(200, json={"data": {"customer": self.customer}})

    def _script_tags(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            src = request.url.params.get("src")
            tags = [t for t in self.script_tags if src is None or t["src"] == src]
            return httpx.Response(200, json={"script_tags": tags})

        if self.script_tag_status != 201:
            return httpx.Response(
                self.script_tag_status,
                json={"errors": "Script tags are not supported by this theme"},
            )
        body = json.loads(request.content)["script_tag"]
        self._next_tag_id += 1
        tag = {"id": self._next_tag_id, "src": body["src"], "event": body["event"]}
        self.script_tags.append(tag)
        return httpx.Response(201, json={"script_tag": tag})

    def _delete_script_tag(self, resource: str) -> httpx.Response:
        tag_id = int(resource.split("/")[1].split(".")[0])
        remaining = [t for t in self.script_tags if t["id"] != tag_id]
        if len(remaining) == len(self.script_tags):
            return httpx.Response(404, json={"errors": "Not Found"})
        self.script_tags = remaining
        return httpx.Response(200, json={})

    def _asset(self, request: httpx.Request, theme_id: int) -> httpx.Response:
        if request.method == "GET":
            key = request.url.params.get("asset[key]")
            value = self.assets.get((theme_id, key))
            if value is None:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"asset": {"key": key, "value": value, "theme_id": theme_id}})

        if self.asset_write_status != 200:
            return httpx.Response(self.asset_write_status, json={"errors": "Asset write rejected"})
        asset = json.loads(request.content)["asset"]
        self.assets[(theme_id, asset["key"])] = asset["value"]
        return httpx.Response(200, json={"asset": {"key": asset["key"], "theme_id": theme_id}})

    def _graphql(self, request: httpx.Request, storefront: bool) -> httpx.Response:
        query = json.loads(request.content)["query"]

        if storefront:
            return httpx.Response(200, json={"data": {"cart": self.cart}})

        if "searchProducts" in query:
            edges = [{"node": p} for p in self.products]
            return httpx.Response(200, json={"data": {"products": {"edges": edges}}})

        if "storefrontAccessTokenCreate" in query:
            return httpx.Response(200, json={"data": {"storefrontAccessTokenCreate": {
                "userErrors": [],
                "storefrontAccessToken": {"accessToken": self.storefront_token, "title": "Chatbot"},
            }}})

        return httpx.Response(200, json={"errors": [{"message": "Unknown query"}]})


class FakeLLM:
    """Scripted stand-in for LLMClient"""

    def __init__(self, reply: str = "Here is what I found.", error: Exception = None):
        self.reply = reply
        self.error = error
        self.prompts: List[tuple] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.prompts.append((system_prompt, user_message))
        if self.error is not None:
            raise self.error
        return self.reply

    async def close(self):
        pass


def product_node(title: str, handle: str, amount: str = "59.00", inventory: int = 4) -> Dict[str, Any]:
    return {
        "id": f"gid://shopify/Product/{handle}",
        "title": title,
        "handle": handle,
        "vendor": "Genie Test",
        "status": "ACTIVE",
        "totalInventory": inventory,
        "onlineStoreUrl": f"https://{SHOP}/products/{handle}",
        "featuredImage": {"url": f"https://cdn.test/{handle}.png"},
        "priceRangeV2": {"minVariantPrice": {"amount": amount, "currencyCode": "USD"}},
    }


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def client_factory(fake_shopify):
    return ShopifyClientFactory(
        api_version=API_VERSION,
        timeout=5.0,
        max_retries=1,
        retry_backoff_base=0,
        transport=fake_shopify.transport,
    )


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'genie-test.db'}"


@pytest.fixture
async def database(db_url):
    db = Database(db_url)
    yield db
    await db.dispose()


@pytest.fixture
def registry(database):
    return ShopRegistry(database)


@pytest.fixture
def provisioner(registry, client_factory):
    return WidgetProvisioner(registry, client_factory, PUBLIC_BASE_URL)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def failing_llm():
    return FakeLLM(error=ExternalAPIError("llm-completion", "HTTP 503", status_code=503))


@pytest.fixture
def settings(db_url):
    return Settings(
        shopify_api_key="test-key",
        shopify_api_secret="",
        shopify_max_retries=1,
        app_url="https://app.test",
        public_base_url=PUBLIC_BASE_URL,
        database_url=db_url,
        provision_timeout=5.0,
    )
