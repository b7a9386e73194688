"""
Installation Coordinator
Completes the Shopify OAuth handshake, stores the merchant's credentials and
makes one best-effort widget provisioning attempt.
"""

import asyncio
import logging
from typing import Optional

from backend.core.errors import AppError, ValidationError, sanitize_message
from .client import ShopifyClientFactory
from .models import ShopAccount
from .oauth import exchange_code_for_token, validate_shop_domain
from .provisioner import WidgetProvisioner
from .registry import ShopRegistry

logger = logging.getLogger(__name__)


class InstallationCoordinator:
    """
    OAuth completion for a merchant install.

    Provisioning is advisory: its outcome is written to
    ShopAccount.last_provisioning_error and never fails the install.

    Usage:
        coordinator = InstallationCoordinator(registry, provisioner, factory, key, secret)
        account = await coordinator.complete_install(code, shop, state)
    """

    def __init__(
        self,
        registry: ShopRegistry,
        provisioner: WidgetProvisioner,
        client_factory: ShopifyClientFactory,
        client_id: str,
        client_secret: str,
        provision_timeout: float = 45.0,
    ):
        self.registry = registry
        self.provisioner = provisioner
        self.client_factory = client_factory
        self.client_id = client_id
        self.client_secret = client_secret
        self.provision_timeout = provision_timeout

    async def complete_install(
        self,
        code: Optional[str],
        shop: Optional[str],
        state: Optional[str],
    ) -> ShopAccount:
        """
        Exchange the authorization code and persist the shop.

        Args:
            code: Authorization code from the OAuth redirect
            shop: Merchant's myshopify.com domain
            state: Anti-forgery state echoed by Shopify

        Returns:
            The stored ShopAccount (with any provisioning error attached)

        Raises:
            ValidationError: Missing parameters or malformed shop domain
            ExternalAPIError: token-exchange failed
        """
        if not code or not shop or not state:
            logger.info(
                f"Install rejected, missing parameters: code={bool(code)} shop={bool(shop)} state={bool(state)}"
            )
            raise ValidationError("Missing required parameters")

        shop_domain = validate_shop_domain(shop)

        logger.info(f"Exchanging authorization code for {shop_domain}")
        async with self.client_factory.http() as http:
            token_data = await exchange_code_for_token(
                http,
                shop_domain,
                code,
                client_id=self.client_id,
                client_secret=self.client_secret,
            )
        access_token = token_data["access_token"]

        # New admin token invalidates any storefront token minted with the old one
        account = await self.registry.upsert(shop_domain, {
            "access_token": access_token,
            "storefront_access_token": None,
        })
        logger.info(f"Shop credentials saved for {shop_domain}")

        error = await self._provision_best_effort(shop_domain, access_token)
        if error is not None:
            return await self.registry.upsert(shop_domain, {"last_provisioning_error": error})

        return await self.registry.find_by_domain(shop_domain) or account

    async def _provision_best_effort(self, shop_domain: str, access_token: str) -> Optional[str]:
        """Run one bounded provisioning attempt; return the error text, if any"""
        try:
            installation = await asyncio.wait_for(
                self.provisioner.provision(shop_domain, access_token),
                timeout=self.provision_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Widget provisioning timed out for {shop_domain}")
            return f"Provisioning timed out after {self.provision_timeout:.0f}s"
        except Exception as e:
            logger.warning(f"Widget provisioning failed during install for {shop_domain}: {e}")
            message = e.public_message() if isinstance(e, AppError) else str(e)
            return sanitize_message(message) or e.__class__.__name__

        logger.info(f"Widget provisioned during install for {shop_domain} via {installation.mechanism.value}")
        return None
