"""
Tool Adapters
Narrow Shopify data fetchers used by the assistant pipeline: catalog search,
cart lookup and policy search. Adapters never raise; a failure comes back
as an empty ToolResult with `error` set.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from integrations.shopify.client import ShopifyClientFactory
from integrations.shopify.models import ShopAccount

logger = logging.getLogger(__name__)

STOP_WORDS = {
    "a", "an", "and", "any", "are", "can", "do", "does", "for", "have", "i",
    "i'm", "im", "is", "it", "looking", "me", "my", "of", "on", "or", "please",
    "product", "products", "search", "show", "some", "the", "to", "want",
    "what", "with", "you", "your", "find", "buy", "get", "need", "there",
    "hi", "hello", "hey", "sell", "recommend", "much", "how", "price",
}

POLICY_TOPICS = {
    "refund": ("refund", "return", "exchange", "money back"),
    "shipping": ("shipping", "delivery", "ship", "deliver"),
    "privacy": ("privacy", "data", "personal"),
    "terms": ("terms", "conditions", "service"),
}

MAX_POLICY_CHARS = 1500
_TAG_PATTERN = re.compile(r"<[^>]+>")
_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9'\-]*")


class ToolRequest(BaseModel):
    """Input shared by every adapter"""
    message: str
    shop_domain: str
    account: Optional[ShopAccount] = None
    cart_id: Optional[str] = None


class ToolResult(BaseModel):
    """Adapter output; empty data plus error on failure"""
    tool: str
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def extract_search_terms(message: str, limit: int = 4) -> Optional[str]:
    """Reduce a shopper message to a few catalog search keywords"""
    words = [w.strip("'-") for w in _WORD_PATTERN.findall(message.lower())]
    terms = [w for w in words if w and w not in STOP_WORDS and len(w) > 1]
    if not terms:
        return None
    return " ".join(terms[:limit])


def strip_html(html: str) -> str:
    return re.sub(r"\s+", " ", _TAG_PATTERN.sub(" ", html or "")).strip()


class ToolAdapter:
    """Base adapter: subclasses implement fetch()"""

    name = "tool"

    def __init__(self, client_factory: ShopifyClientFactory):
        self.client_factory = client_factory

    async def run(self, request: ToolRequest) -> ToolResult:
        try:
            data = await self.fetch(request)
        except Exception as e:
            logger.warning(f"{self.name} failed for {request.shop_domain}: {e}")
            return ToolResult(tool=self.name, data=self.empty(), error=str(e) or e.__class__.__name__)
        return ToolResult(tool=self.name, data=data)

    def empty(self) -> Dict[str, Any]:
        return {}

    async def fetch(self, request: ToolRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def _require_account(self, request: ToolRequest) -> ShopAccount:
        if request.account is None:
            raise LookupError(f"Shop not installed: {request.shop_domain}")
        return request.account


class CatalogSearchAdapter(ToolAdapter):
    """Product search through the Admin GraphQL API"""

    name = "catalog_search"

    def __init__(self, client_factory: ShopifyClientFactory, max_results: int = 5):
        super().__init__(client_factory)
        self.max_results = max_results

    def empty(self) -> Dict[str, Any]:
        return {"query": None, "products": []}

    async def fetch(self, request: ToolRequest) -> Dict[str, Any]:
        account = self._require_account(request)
        query = extract_search_terms(request.message)

        async with self.client_factory.admin(request.shop_domain, account.access_token) as client:
            products = await client.search_products(query, first=self.max_results)

        logger.debug(f"Catalog search '{query}' for {request.shop_domain}: {len(products)} products")
        return {"query": query, "products": [p.model_dump() for p in products]}


class CartLookupAdapter(ToolAdapter):
    """Cart contents through the Storefront API"""

    name = "cart_lookup"

    def empty(self) -> Dict[str, Any]:
        return {"cart": None}

    async def fetch(self, request: ToolRequest) -> Dict[str, Any]:
        if not request.cart_id:
            return {"cart": None}

        account = self._require_account(request)
        if not account.storefront_access_token:
            raise LookupError(f"No storefront access token for {request.shop_domain}")

        async with self.client_factory.storefront(
            request.shop_domain, account.storefront_access_token
        ) as client:
            cart = await client.get_cart(request.cart_id)

        return {"cart": cart.model_dump() if cart else None}


class PolicySearchAdapter(ToolAdapter):
    """Store policies through the Admin REST API"""

    name = "policy_search"

    def empty(self) -> Dict[str, Any]:
        return {"policies": []}

    async def fetch(self, request: ToolRequest) -> Dict[str, Any]:
        account = self._require_account(request)

        async with self.client_factory.admin(request.shop_domain, account.access_token) as client:
            policies = await client.get_policies()

        text = request.message.lower()
        topics = [
            topic for topic, keywords in POLICY_TOPICS.items()
            if any(keyword in text for keyword in keywords)
        ]

        def matches(policy) -> bool:
            haystack = f"{policy.title} {policy.handle or ''}".lower()
            return any(topic in haystack for topic in topics)

        selected = [p for p in policies if matches(p)] if topics else []
        if not selected:
            selected = policies

        return {
            "topics": topics,
            "policies": [
                {
                    "title": p.title,
                    "url": p.url,
                    "body": strip_html(p.body)[:MAX_POLICY_CHARS],
                }
                for p in selected
            ],
        }


def build_default_adapters(client_factory: ShopifyClientFactory) -> List[ToolAdapter]:
    return [
        CatalogSearchAdapter(client_factory),
        CartLookupAdapter(client_factory),
        PolicySearchAdapter(client_factory),
    ]
