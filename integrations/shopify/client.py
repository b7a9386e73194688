"""
Shopify API Clients
Admin API (REST + GraphQL) and Storefront API clients with retry logic,
plus a factory that builds them with shared timeouts and transport.
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import httpx

from backend.core.errors import ExternalAPIError
from .models import (
    CartLine,
    CatalogProduct,
    ScriptTag,
    ScriptTagCreateRequest,
    ShopInfo,
    ShopifyPolicy,
    ShopifyTheme,
    StorefrontCart,
    ThemeAsset,
)

logger = logging.getLogger(__name__)


class ShopifyAPIError(ExternalAPIError):
    """Base exception for Shopify API errors"""
    def __init__(
        self,
        message: str,
        status_code: int = None,
        response_body: dict = None,
        operation: str = "shopify-api",
    ):
        super().__init__(operation, message, status_code=status_code)
        self.response_body = response_body or {}


class ShopifyRateLimitError(ShopifyAPIError):
    """Rate limit exceeded"""
    def __init__(self, retry_after: float = 1.0):
        super().__init__(f"Rate limit exceeded. Retry after {retry_after}s", status_code=429)
        self.retry_after = retry_after


class ShopifyAuthError(ShopifyAPIError):
    """Authentication/authorization error"""
    pass


class ShopifyNotFoundError(ShopifyAPIError):
    """Resource not found"""
    pass


def normalize_shop_domain(domain: str) -> str:
    """Normalize shop domain to just the hostname"""
    domain = domain.strip()
    if domain.startswith(("http://", "https://")):
        parsed = urlparse(domain)
        domain = parsed.netloc or parsed.path

    domain = domain.split("/")[0].lower()

    if domain and "." not in domain:
        domain = f"{domain}.myshopify.com"

    return domain


def retry_after_seconds(value: Optional[str], default: float, ceiling: float) -> float:
    """
    Seconds to wait for a Retry-After header.

    Accepts delta-seconds or an HTTP-date; anything unparseable yields `default`.
    """
    if not value:
        return default
    try:
        delay = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return default
        if when is None:
            return default
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        delay = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(delay, 0.0), ceiling)


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


class _RetryingClient:
    """Shared request/retry plumbing for the Admin and Storefront clients"""

    DEFAULT_TIMEOUT = 15.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 1.0
    RETRY_BACKOFF_MAX = 30.0

    def __init__(
        self,
        shop_domain: str,
        base_url: str,
        headers: Dict[str, str],
        timeout: float = None,
        max_retries: int = None,
        retry_backoff_base: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.base_url = base_url
        self.timeout = self.DEFAULT_TIMEOUT if timeout is None else timeout
        self.max_retries = max(1, self.MAX_RETRIES if max_retries is None else max_retries)
        self.retry_backoff_base = (
            self.RETRY_BACKOFF_BASE if retry_backoff_base is None else retry_backoff_base
        )
        self._headers = headers
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_backoff_base * (2 ** attempt), self.RETRY_BACKOFF_MAX)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any] = None,
        json_data: Dict[str, Any] = None,
        operation: str = "shopify-api",
    ) -> Dict[str, Any]:
        """
        Make HTTP request with retry logic.

        Retries 429, 5xx and transport errors; every other non-success
        status raises immediately.

        Raises:
            ShopifyAuthError: On 401/403
            ShopifyNotFoundError: On 404
            ShopifyAPIError: On any other failure (after retries)
        """
        url = urljoin(self.base_url + "/", endpoint.lstrip("/"))
        client = await self._get_client()

        last_error = None

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            try:
                response = await client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                )
            except httpx.TimeoutException as e:
                last_error = ShopifyAPIError(f"Request timeout: {e}", operation=operation)
                if not is_last:
                    logger.warning(f"Timeout on {method} {endpoint}. Retrying (attempt {attempt + 1})")
                    await asyncio.sleep(self._backoff(attempt))
                continue
            except httpx.RequestError as e:
                last_error = ShopifyAPIError(f"Request error: {e}", operation=operation)
                if not is_last:
                    logger.warning(f"Request error on {method} {endpoint}: {e}. Retrying")
                    await asyncio.sleep(self._backoff(attempt))
                continue

            logger.debug(f"API call: {method} {endpoint} -> {response.status_code}")

            if response.status_code in (200, 201, 202):
                return _safe_json(response)

            if response.status_code == 204:
                return {}

            if response.status_code == 429:
                retry_after = retry_after_seconds(
                    response.headers.get("Retry-After"),
                    default=self._backoff(attempt),
                    ceiling=self.RETRY_BACKOFF_MAX,
                )
                last_error = ShopifyRateLimitError(retry_after)
                if not is_last:
                    logger.warning(f"Rate limited. Retry after {retry_after}s (attempt {attempt + 1})")
                    await asyncio.sleep(retry_after)
                continue

            body = _safe_json(response)

            if response.status_code in (401, 403):
                raise ShopifyAuthError(
                    f"Access denied ({response.status_code}): {body.get('errors', 'Invalid or expired access token')}",
                    status_code=response.status_code,
                    response_body=body,
                    operation=operation,
                )

            if response.status_code == 404:
                raise ShopifyNotFoundError(
                    f"Resource not found: {endpoint}",
                    status_code=404,
                    response_body=body,
                    operation=operation,
                )

            if response.status_code >= 500:
                last_error = ShopifyAPIError(
                    f"Server error {response.status_code}",
                    status_code=response.status_code,
                    response_body=body,
                    operation=operation,
                )
                if not is_last:
                    logger.warning(f"Server error {response.status_code}. Retrying")
                    await asyncio.sleep(self._backoff(attempt))
                continue

            raise ShopifyAPIError(
                f"API error: {body.get('errors', response.text[:200])}",
                status_code=response.status_code,
                response_body=body,
                operation=operation,
            )

        raise last_error or ShopifyAPIError("Request failed after all retries", operation=operation)

    async def graphql(
        self,
        query: str,
        variables: Dict[str, Any] = None,
        operation: str = "shopify-graphql",
    ) -> Dict[str, Any]:
        """Run a GraphQL query and return its `data` object"""
        body = await self._request(
            "POST",
            "/graphql.json",
            json_data={"query": query, "variables": variables or {}},
            operation=operation,
        )
        if body.get("errors"):
            raise ShopifyAPIError(
                f"GraphQL errors: {body['errors']}",
                response_body=body,
                operation=operation,
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ShopifyAPIError("GraphQL response missing data", response_body=body, operation=operation)
        return data


# =============================================================================
# GraphQL Documents
# =============================================================================

PRODUCT_SEARCH_QUERY = """
query searchProducts($first: Int!, $query: String) {
  products(first: $first, query: $query) {
    edges {
      node {
        id
        title
        handle
        vendor
        status
        totalInventory
        onlineStoreUrl
        featuredImage { url }
        priceRangeV2 { minVariantPrice { amount currencyCode } }
      }
    }
  }
}
"""

STOREFRONT_TOKEN_MUTATION = """
mutation StorefrontAccessTokenCreate($input: StorefrontAccessTokenInput!) {
  storefrontAccessTokenCreate(input: $input) {
    userErrors { field message }
    storefrontAccessToken { accessToken title }
  }
}
"""

CART_QUERY = """
query cart($id: ID!) {
  cart(id: $id) {
    id
    checkoutUrl
    totalQuantity
    cost { subtotalAmount { amount currencyCode } }
    lines(first: 20) {
      edges {
        node {
          quantity
          cost { totalAmount { amount currencyCode } }
          merchandise {
            ... on ProductVariant {
              title
              product { title }
            }
          }
        }
      }
    }
  }
}
"""


class ShopifyAdminClient(_RetryingClient):
    """
    Shopify Admin API client.

    Usage:
        async with ShopifyAdminClient("my-store.myshopify.com", "shpat_xxxxx") as client:
            tags = await client.get_script_tags()
    """

    API_VERSION = "2025-07"

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = None,
        timeout: float = None,
        max_retries: int = None,
        retry_backoff_base: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        domain = normalize_shop_domain(shop_domain)
        self.api_version = api_version or self.API_VERSION
        super().__init__(
            shop_domain=domain,
            base_url=f"https://{domain}/admin/api/{self.api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            max_retries=max_retries,
            retry_backoff_base=retry_backoff_base,
            transport=transport,
        )

    # =========================================================================
    # Shop API
    # =========================================================================

    async def get_shop_info(self) -> ShopInfo:
        response = await self._request("GET", "/shop.json", operation="shop-info")
        return ShopInfo(**response.get("shop", {}))

    async def get_products(self, limit: int = 50) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/products.json", params={"limit": limit}, operation="products")
        return response.get("products", [])

    async def get_customers(self, limit: int = 50) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/customers.json", params={"limit": limit}, operation="customers")
        return response.get("customers", [])

    async def get_orders(self, limit: int = 50, status: str = "any") -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", "/orders.json", params={"limit": limit, "status": status}, operation="orders"
        )
        return response.get("orders", [])

    # =========================================================================
    # Catalog Search (GraphQL)
    # =========================================================================

    async def search_products(self, query: Optional[str], first: int = 5) -> List[CatalogProduct]:
        """
        Search the catalog with Shopify's product query syntax.

        Args:
            query: Search string (None lists the first products)
            first: Maximum number of products to return
        """
        data = await self.graphql(
            PRODUCT_SEARCH_QUERY,
            {"first": first, "query": query},
            operation="catalog-search",
        )
        edges = (data.get("products") or {}).get("edges") or []

        products = []
        for edge in edges:
            node = edge.get("node") or {}
            price = ((node.get("priceRangeV2") or {}).get("minVariantPrice") or {})
            inventory = node.get("totalInventory")
            products.append(CatalogProduct(
                id=node.get("id", ""),
                title=node.get("title", ""),
                handle=node.get("handle"),
                vendor=node.get("vendor"),
                price=f"{price['amount']} {price.get('currencyCode', '')}".strip() if price.get("amount") else None,
                available=inventory is None or inventory > 0,
                total_inventory=inventory,
                image=(node.get("featuredImage") or {}).get("url"),
                url=node.get("onlineStoreUrl") or (
                    f"https://{self.shop_domain}/products/{node['handle']}" if node.get("handle") else None
                ),
            ))
        return products

    # =========================================================================
    # Policies API
    # =========================================================================

    async def get_policies(self) -> List[ShopifyPolicy]:
        """Get store policies (refund, privacy, terms of service, etc.)"""
        response = await self._request("GET", "/policies.json", operation="policies")
        return [ShopifyPolicy(**p) for p in response.get("policies", [])]

    # =========================================================================
    # Script Tags API
    # =========================================================================

    async def get_script_tags(self, src: str = None) -> List[ScriptTag]:
        params = {"src": src} if src else None
        response = await self._request("GET", "/script_tags.json", params=params, operation="script-tag-list")
        return [ScriptTag(**t) for t in response.get("script_tags", [])]

    async def create_script_tag(self, request: ScriptTagCreateRequest) -> ScriptTag:
        response = await self._request(
            "POST",
            "/script_tags.json",
            json_data={"script_tag": request.model_dump()},
            operation="script-tag-create",
        )
        tag = response.get("script_tag")
        if not tag:
            raise ShopifyAPIError("Script tag response missing script_tag", operation="script-tag-create")
        return ScriptTag(**tag)

    async def delete_script_tag(self, script_tag_id: str) -> bool:
        await self._request("DELETE", f"/script_tags/{script_tag_id}.json", operation="script-tag-delete")
        return True

    # =========================================================================
    # Themes / Assets API
    # =========================================================================

    async def get_themes(self) -> List[ShopifyTheme]:
        response = await self._request("GET", "/themes.json", operation="theme-list")
        return [ShopifyTheme(**t) for t in response.get("themes", [])]

    async def get_asset(self, theme_id: int, key: str) -> ThemeAsset:
        response = await self._request(
            "GET",
            f"/themes/{theme_id}/assets.json",
            params={"asset[key]": key},
            operation="asset-read",
        )
        asset = response.get("asset")
        if not asset:
            raise ShopifyAPIError(f"Asset response missing asset: {key}", operation="asset-read")
        return ThemeAsset(**asset)

    async def put_asset(self, theme_id: int, key: str, value: str) -> ThemeAsset:
        response = await self._request(
            "PUT",
            f"/themes/{theme_id}/assets.json",
            json_data={"asset": {"key": key, "value": value}},
            operation="asset-write",
        )
        return ThemeAsset(**(response.get("asset") or {"key": key}))

    # =========================================================================
    # Storefront Tokens
    # =========================================================================

    async def create_storefront_access_token(self, title: str = "Chatbot Storefront Access Token") -> str:
        data = await self.graphql(
            STOREFRONT_TOKEN_MUTATION,
            {"input": {"title": title}},
            operation="storefront-token-create",
        )
        result = data.get("storefrontAccessTokenCreate") or {}
        token = (result.get("storefrontAccessToken") or {}).get("accessToken")
        if not token:
            raise ShopifyAPIError(
                f"Storefront token not created: {result.get('userErrors') or 'no token returned'}",
                operation="storefront-token-create",
            )
        return token


class ShopifyStorefrontClient(_RetryingClient):
    """Storefront API client (cart reads)"""

    API_VERSION = "2025-07"

    def __init__(
        self,
        shop_domain: str,
        storefront_token: str,
        api_version: str = None,
        timeout: float = None,
        max_retries: int = None,
        retry_backoff_base: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        domain = normalize_shop_domain(shop_domain)
        self.api_version = api_version or self.API_VERSION
        super().__init__(
            shop_domain=domain,
            base_url=f"https://{domain}/api/{self.api_version}",
            headers={
                "X-Shopify-Storefront-Access-Token": storefront_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            max_retries=max_retries,
            retry_backoff_base=retry_backoff_base,
            transport=transport,
        )

    async def get_cart(self, cart_id: str) -> Optional[StorefrontCart]:
        """Fetch a cart by id; None when the cart no longer exists"""
        data = await self.graphql(CART_QUERY, {"id": cart_id}, operation="cart-lookup")
        cart = data.get("cart")
        if not cart:
            return None

        subtotal = ((cart.get("cost") or {}).get("subtotalAmount") or {})
        lines = []
        for edge in (cart.get("lines") or {}).get("edges") or []:
            node = edge.get("node") or {}
            merchandise = node.get("merchandise") or {}
            amount = ((node.get("cost") or {}).get("totalAmount") or {})
            lines.append(CartLine(
                title=(merchandise.get("product") or {}).get("title") or merchandise.get("title", "Item"),
                variant_title=merchandise.get("title"),
                quantity=node.get("quantity", 1),
                amount=amount.get("amount"),
                currency=amount.get("currencyCode"),
            ))

        return StorefrontCart(
            id=cart.get("id", cart_id),
            checkout_url=cart.get("checkoutUrl"),
            total_quantity=cart.get("totalQuantity", 0),
            subtotal=subtotal.get("amount"),
            currency=subtotal.get("currencyCode"),
            lines=lines,
        )


class ShopifyClientFactory:
    """
    Builds Shopify clients with shared settings.

    Tests pass an httpx transport to route every request to a fake.
    """

    def __init__(
        self,
        api_version: str = ShopifyAdminClient.API_VERSION,
        timeout: float = _RetryingClient.DEFAULT_TIMEOUT,
        max_retries: int = _RetryingClient.MAX_RETRIES,
        retry_backoff_base: float = _RetryingClient.RETRY_BACKOFF_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self.transport = transport

    def admin(self, shop_domain: str, access_token: str) -> ShopifyAdminClient:
        return ShopifyAdminClient(
            shop_domain,
            access_token,
            api_version=self.api_version,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_backoff_base=self.retry_backoff_base,
            transport=self.transport,
        )

    def storefront(self, shop_domain: str, storefront_token: str) -> ShopifyStorefrontClient:
        return ShopifyStorefrontClient(
            shop_domain,
            storefront_token,
            api_version=self.api_version,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_backoff_base=self.retry_backoff_base,
            transport=self.transport,
        )

    def http(self) -> httpx.AsyncClient:
        """Plain client for non-versioned endpoints (OAuth token exchange)"""
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport)
