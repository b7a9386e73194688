"""
Shopify Integration API Routes
Endpoints for OAuth installation, widget provisioning, the storefront loader
script, shop management and shopper login.
"""

import asyncio
import html
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from pydantic import BaseModel, Field

from backend.core.config import Settings
from backend.core.errors import AppError, NotFoundError, ValidationError
from .client import ShopifyClientFactory
from .customer_auth import CustomerAccountAuth
from .installation import InstallationCoordinator
from .loader import render_bootstrap_script
from .models import ShopAccount
from .oauth import validate_shop_domain, verify_oauth_hmac
from .provisioner import WidgetProvisioner
from .registry import ShopRegistry

logger = logging.getLogger(__name__)

shopify_router = APIRouter(prefix="/api", tags=["Shopify Integration"])


# =============================================================================
# Request Models
# =============================================================================

class ShopRequest(BaseModel):
    """Request naming a shop"""
    shop: str = Field(..., description="Shopify store domain (e.g., my-store.myshopify.com)")


class CustomerAuthRequest(BaseModel):
    """Customer Account API client credentials"""
    shop: str
    customer_account_client_id: str
    customer_account_client_secret: str


# =============================================================================
# Dependencies
# =============================================================================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ShopRegistry:
    return request.app.state.registry


def get_provisioner(request: Request) -> WidgetProvisioner:
    return request.app.state.provisioner


def get_coordinator(request: Request) -> InstallationCoordinator:
    return request.app.state.coordinator


def get_client_factory(request: Request) -> ShopifyClientFactory:
    return request.app.state.client_factory


def get_customer_auth(request: Request) -> CustomerAccountAuth:
    return request.app.state.customer_auth


async def _require_shop(registry: ShopRegistry, shop: str) -> ShopAccount:
    shop_domain = validate_shop_domain(shop)
    account = await registry.find_by_domain(shop_domain)
    if account is None:
        raise NotFoundError("shop", "Shop not found")
    return account


# =============================================================================
# OAuth Installation
# =============================================================================

@shopify_router.get("/auth")
async def complete_oauth(
    request: Request,
    code: Optional[str] = Query(default=None),
    shop: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    coordinator: InstallationCoordinator = Depends(get_coordinator),
):
    """
    OAuth callback: exchange the code, store credentials, provision the widget.

    Redirects to the app's callback page with `success=true` or `error=...`.
    Missing parameters are answered with 400.
    """
    logger.info(f"Auth request received for shop={shop}")

    if not code or not shop or not state:
        raise ValidationError("Missing required parameters")

    callback_url = f"{settings.app_url.rstrip('/')}/shopify/callback"

    try:
        if "hmac" in request.query_params and settings.shopify_api_secret:
            verify_oauth_hmac(dict(request.query_params), settings.shopify_api_secret)

        account = await coordinator.complete_install(code, shop, state)
    except AppError as e:
        logger.warning(f"Install failed for {shop}: {e}")
        return RedirectResponse(f"{callback_url}?error={quote(e.public_message())}", status_code=302)

    if account.last_provisioning_error:
        logger.info(f"Installed {account.shop_domain} without widget: {account.last_provisioning_error}")

    return RedirectResponse(
        f"{callback_url}?shop={quote(account.shop_domain)}&success=true",
        status_code=302,
    )


# =============================================================================
# Widget Provisioning
# =============================================================================

@shopify_router.post("/inject-widget")
async def inject_widget(
    body: ShopRequest,
    registry: ShopRegistry = Depends(get_registry),
    provisioner: WidgetProvisioner = Depends(get_provisioner),
):
    """Install (or confirm) the widget loader for a shop"""
    account = await _require_shop(registry, body.shop)

    installation = await provisioner.provision(account.shop_domain, account.access_token)

    return {
        "success": True,
        "message": f"Widget installed via {installation.mechanism.value}",
        "installation": installation.to_summary(),
    }


@shopify_router.post("/remove-widget")
async def remove_widget(
    body: ShopRequest,
    registry: ShopRegistry = Depends(get_registry),
    provisioner: WidgetProvisioner = Depends(get_provisioner),
):
    """Remove the widget loader from a shop"""
    account = await _require_shop(registry, body.shop)

    installation = await provisioner.remove(account.shop_domain, account.access_token)

    return {
        "success": True,
        "message": f"Widget removed ({installation.mechanism.value})",
    }


@shopify_router.get("/script/{shop}")
async def get_script(
    shop: str,
    registry: ShopRegistry = Depends(get_registry),
):
    """Active widget installation summary for a shop"""
    try:
        shop_domain = validate_shop_domain(shop)
    except ValidationError:
        raise NotFoundError("installation", "No active widget installation")
    installation = await registry.find_installation(shop_domain)
    if installation is None or not installation.is_active:
        raise NotFoundError("installation", "No active widget installation")

    return {"success": True, "script": installation.to_summary()}


@shopify_router.get("/widget-loader.js")
async def widget_loader(
    shop: Optional[str] = Query(default=None),
    api: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
):
    """Bootstrap script that injects the widget bundle on the storefront"""
    script = render_bootstrap_script(
        shop=shop,
        api_base_url=api or settings.public_base_url,
        widget_bundle_url=settings.widget_bundle_url,
    )
    return Response(
        content=script,
        media_type="application/javascript",
        headers={"Cache-Control": "public, max-age=3600"},
    )


# =============================================================================
# Shop Management
# =============================================================================

@shopify_router.post("/shop-info")
async def get_shop_info(
    body: ShopRequest,
    registry: ShopRegistry = Depends(get_registry),
    client_factory: ShopifyClientFactory = Depends(get_client_factory),
):
    """Shop details plus recent products, customers and orders"""
    account = await _require_shop(registry, body.shop)

    async with client_factory.admin(account.shop_domain, account.access_token) as client:
        shop_info, products, customers, orders = await asyncio.gather(
            client.get_shop_info(),
            client.get_products(limit=50),
            client.get_customers(limit=50),
            client.get_orders(limit=50),
        )

    return {
        "shop": shop_info.model_dump(),
        "products": products,
        "customers": customers,
        "orders": orders,
    }


@shopify_router.post("/create-storefront-token")
async def create_storefront_token(
    body: ShopRequest,
    registry: ShopRegistry = Depends(get_registry),
    client_factory: ShopifyClientFactory = Depends(get_client_factory),
):
    """Mint a Storefront API token (used for cart lookups) and store it"""
    account = await _require_shop(registry, body.shop)

    async with client_factory.admin(account.shop_domain, account.access_token) as client:
        storefront_token = await client.create_storefront_access_token()

    await registry.upsert(account.shop_domain, {"storefront_access_token": storefront_token})
    logger.info(f"Storefront token stored for {account.shop_domain}")

    return {
        "success": True,
        "message": "Storefront access token created and stored",
    }


@shopify_router.post("/store-customer-auth")
async def store_customer_auth(
    body: CustomerAuthRequest,
    registry: ShopRegistry = Depends(get_registry),
):
    """Store Customer Account API client credentials"""
    if not body.customer_account_client_id or not body.customer_account_client_secret:
        raise ValidationError("All fields required")

    account = await _require_shop(registry, body.shop)
    await registry.upsert(account.shop_domain, {
        "customer_account_client_id": body.customer_account_client_id,
        "customer_account_client_secret": body.customer_account_client_secret,
    })

    return {"success": True, "message": "Customer auth credentials stored"}


# =============================================================================
# Customer Login
# =============================================================================

LOGIN_SUCCESS_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Login Successful</title></head>
<body style="font-family: sans-serif; padding: 20px;">
  <h1>Successfully Logged In!</h1>
  <p>{email}</p>
  <p>Shop: {shop}<br>Customer ID: {customer_id}</p>
  <p>You can now close this window and return to the chat.</p>
  <button onclick="window.close()">Close Window</button>
</body>
</html>
"""

LOGIN_FAILED_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Login Failed</title></head>
<body style="font-family: sans-serif; padding: 20px;">
  <h2>Login Failed</h2>
  <p>{message}</p>
</body>
</html>
"""


@shopify_router.get("/customer-auth/login")
async def customer_login(
    shop: Optional[str] = Query(default=None),
    return_url: Optional[str] = Query(default=None),
    customer_auth: CustomerAccountAuth = Depends(get_customer_auth),
):
    """Send a shopper to the Customer Account authorize page (or the store login page)"""
    if not shop:
        raise ValidationError("Shop parameter required")

    url = await customer_auth.login_url(shop, return_url)
    return RedirectResponse(url, status_code=302)


@shopify_router.get("/customer-auth/callback")
async def customer_login_callback(
    code: Optional[str] = Query(default=None),
    shop: Optional[str] = Query(default=None),
    customer_auth: CustomerAccountAuth = Depends(get_customer_auth),
):
    """Exchange the shopper's authorization code and store the customer token"""
    try:
        customer = await customer_auth.complete_login(code, shop)
    except AppError as e:
        logger.warning(f"Customer login failed for {shop}: {e}")
        page = LOGIN_FAILED_PAGE.format(message=html.escape(e.public_message()))
        return HTMLResponse(page, status_code=e.http_status)

    page = LOGIN_SUCCESS_PAGE.format(
        email=html.escape(customer.customer_email),
        shop=html.escape(customer.shop_domain),
        customer_id=html.escape(customer.customer_id or "N/A"),
    )
    return HTMLResponse(page)


# =============================================================================
# Route Configuration
# =============================================================================

def configure_shopify_routes(app):
    """Configure Shopify routes on the FastAPI app"""
    app.include_router(shopify_router)
    logger.info("Shopify integration routes registered at /api")
