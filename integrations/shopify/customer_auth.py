"""
Customer Account Login
Shopper login through the Customer Account API: the authorize redirect, the
code-for-token exchange and storage of the customer's access token.
"""

import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from backend.core.errors import ExternalAPIError, NotFoundError, ValidationError
from .client import ShopifyClientFactory
from .models import CustomerSession, ShopAccount
from .oauth import validate_shop_domain
from .registry import ShopRegistry

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://shopify.com/myshopify/customer_account/oauth/authorize"
TOKEN_URL = "https://shopify.com/myshopify/customer_account/oauth/token"
CUSTOMER_API_URL = "https://customeraccount.shopify.com/customer/api/2024-07/graphql.json"
SCOPES = "openid email https://api.shopify.com/auth/customer.graphql"
CALLBACK_PATH = "/api/customer-auth/callback"

# Stored when the customer query yields no email
UNKNOWN_EMAIL = "unknown@example.com"

CUSTOMER_QUERY = """
query {
  customer {
    id
    email
    firstName
    lastName
  }
}
"""


def _has_credentials(account: Optional[ShopAccount]) -> bool:
    return bool(
        account
        and account.customer_account_client_id
        and account.customer_account_client_secret
    )


class CustomerAccountAuth:
    """
    Customer Account API login for storefront shoppers.

    Shops that stored client credentials (see /api/store-customer-auth) get the
    OAuth flow; every other shop falls back to its own /account/login page,
    which yields no token.

    Usage:
        auth = CustomerAccountAuth(registry, client_factory, "https://genie.example.com", "https://app.example.com")
        url = await auth.login_url("demo.myshopify.com")
        customer = await auth.complete_login(code, "demo.myshopify.com")
    """

    def __init__(
        self,
        registry: ShopRegistry,
        client_factory: ShopifyClientFactory,
        public_base_url: str,
        app_url: str,
    ):
        self.registry = registry
        self.client_factory = client_factory
        self.public_base_url = public_base_url.rstrip("/")
        self.app_url = app_url.rstrip("/")

    @property
    def redirect_uri(self) -> str:
        return f"{self.public_base_url}{CALLBACK_PATH}"

    async def login_url(self, shop: str, return_url: Optional[str] = None) -> str:
        """
        Where to send a shopper who asked to log in.

        Raises:
            ValidationError: Missing or malformed shop domain
            NotFoundError: shop, when the domain was never installed
        """
        shop_domain = validate_shop_domain(shop)
        account = await self.registry.find_by_domain(shop_domain)
        if account is None:
            raise NotFoundError("shop", "Shop not found")

        if _has_credentials(account):
            query = urlencode({
                "client_id": account.customer_account_client_id,
                "scope": SCOPES,
                "redirect_uri": self.redirect_uri,
                "state": secrets.token_urlsafe(16),
                "shop": shop_domain,
            }, quote_via=quote)
            logger.info(f"Customer login for {shop_domain} via Customer Account API")
            return f"{AUTHORIZE_URL}?{query}"

        logger.info(f"Customer Account API not configured for {shop_domain}; using store login page")
        query = urlencode({"return_url": return_url or f"{self.app_url}/chat"}, quote_via=quote)
        return f"https://{shop_domain}/account/login?{query}"

    async def complete_login(self, code: Optional[str], shop: Optional[str]) -> CustomerSession:
        """
        Exchange the authorization code and store the customer's token.

        Raises:
            ValidationError: Missing code or shop
            NotFoundError: customer-account, when the shop has no client credentials
            ExternalAPIError: customer-token-exchange failed
        """
        if not code:
            raise ValidationError("Missing authorization code")
        if not shop:
            raise ValidationError("Shop parameter is required")

        shop_domain = validate_shop_domain(shop)
        account = await self.registry.find_by_domain(shop_domain)
        if not _has_credentials(account):
            raise NotFoundError("customer-account", "Customer Account API not configured")

        async with self.client_factory.http() as http:
            token_data = await self._exchange_code(http, account, code)
            access_token = token_data["access_token"]
            customer = await self._fetch_customer(http, access_token)

        stored = await self.registry.upsert_customer_session(CustomerSession(
            shop_domain=shop_domain,
            customer_email=customer.get("email") or UNKNOWN_EMAIL,
            customer_access_token=access_token,
            customer_id=customer.get("id"),
            session_id=token_data.get("session_id"),
        ))
        logger.info(f"Customer token stored for {stored.customer_email} at {shop_domain}")
        return stored

    async def _exchange_code(self, http: httpx.AsyncClient, account: ShopAccount, code: str) -> Dict[str, Any]:
        try:
            response = await http.post(
                TOKEN_URL,
                json={
                    "grant_type": "authorization_code",
                    "client_id": account.customer_account_client_id,
                    "client_secret": account.customer_account_client_secret,
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
            )
        except httpx.RequestError as e:
            raise ExternalAPIError("customer-token-exchange", f"Failed to exchange authorization code: {e}")

        if response.status_code != 200:
            logger.warning(f"Customer token exchange failed for {account.shop_domain}: HTTP {response.status_code}")
            raise ExternalAPIError(
                "customer-token-exchange",
                "Failed to exchange authorization code",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            raise ExternalAPIError("customer-token-exchange", "Token endpoint returned invalid JSON")

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ExternalAPIError("customer-token-exchange", "Token endpoint response missing access_token")
        return payload

    async def _fetch_customer(self, http: httpx.AsyncClient, access_token: str) -> Dict[str, Any]:
        """Customer id and email; empty when the lookup fails"""
        try:
            response = await http.post(
                CUSTOMER_API_URL,
                json={"query": CUSTOMER_QUERY},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as e:
            logger.warning(f"Customer info lookup failed: {e}")
            return {}

        if response.status_code != 200:
            logger.warning(f"Customer info lookup failed: HTTP {response.status_code}")
            return {}

        try:
            body = response.json()
        except ValueError:
            return {}
        return ((body.get("data") or {}).get("customer") or {}) if isinstance(body, dict) else {}
