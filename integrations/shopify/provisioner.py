"""
Widget Provisioner
Installs the chat widget loader on a storefront: Shopify script tags first,
theme layout injection as the fallback. Shared by the OAuth callback and the
inject/remove endpoints.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from backend.core.errors import ExternalAPIError, NotFoundError, ProvisionError
from .client import ShopifyAdminClient, ShopifyAPIError, ShopifyClientFactory, ShopifyNotFoundError
from .loader import build_loader_url, has_snippet, inject_snippet, render_snippet, strip_snippet
from .models import (
    InstallationMechanism,
    InstallationStatus,
    ScriptTagCreateRequest,
    ShopifyTheme,
    WidgetInstallation,
)
from .registry import ShopRegistry

logger = logging.getLogger(__name__)

LAYOUT_ASSET_KEY = "layout/theme.liquid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _InFlight:
    """Shared provisioning task for one shop and the number of callers awaiting it"""

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


class WidgetProvisioner:
    """
    Idempotent widget provisioning per shop.

    Uninstalled -> Installed(platform-hook)
    Uninstalled -> (hook rejected) -> Installed(asset-injection)
    Uninstalled -> (both fail) -> Failed
    Installed(*) -> remove() -> Inactive

    Concurrent provision() calls for the same shop are coalesced into one
    in-flight task, so the theme asset read-modify-write never interleaves
    within a process. A cancelled caller only stops waiting; the shared
    attempt is cancelled once no caller is left.

    Usage:
        provisioner = WidgetProvisioner(registry, client_factory, "https://app.example.com")
        installation = await provisioner.provision("demo.myshopify.com", "shpat_xxx")
    """

    def __init__(
        self,
        registry: ShopRegistry,
        client_factory: ShopifyClientFactory,
        public_base_url: str,
    ):
        self.registry = registry
        self.client_factory = client_factory
        self.public_base_url = public_base_url
        self._inflight: Dict[str, _InFlight] = {}

    def loader_url_for(self, shop_domain: str) -> str:
        return build_loader_url(self.public_base_url, shop_domain)

    # =========================================================================
    # Provision
    # =========================================================================

    async def provision(self, shop_domain: str, access_token: str) -> WidgetInstallation:
        """
        Install the loader, preferring the platform hook.

        Raises:
            NotFoundError: main-theme, when the fallback finds no live theme
            ExternalAPIError: asset-write, when the layout write is rejected
            ProvisionError: when both mechanisms fail for any other reason
        """
        flight = self._inflight.get(shop_domain)
        if flight is None:
            flight = _InFlight(asyncio.ensure_future(self._provision(shop_domain, access_token)))
            self._inflight[shop_domain] = flight
            flight.task.add_done_callback(lambda done: self._forget(shop_domain, done))
        else:
            logger.info(f"Joining in-flight provisioning for {shop_domain}")

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            # A cancelled caller abandons the attempt only when it is the last one waiting
            if flight.waiters == 1 and not flight.task.done():
                logger.info(f"Cancelling provisioning for {shop_domain}; no callers left")
                flight.task.cancel()
            raise
        finally:
            flight.waiters -= 1

    def _forget(self, shop_domain: str, task: asyncio.Task):
        flight = self._inflight.get(shop_domain)
        if flight is not None and flight.task is task:
            del self._inflight[shop_domain]

    async def _provision(self, shop_domain: str, access_token: str) -> WidgetInstallation:
        loader_url = self.loader_url_for(shop_domain)
        snippet = render_snippet(loader_url)
        existing = await self.registry.find_installation(shop_domain)
        primary_failure: Optional[ShopifyAPIError] = None

        async with self.client_factory.admin(shop_domain, access_token) as client:
            try:
                script_tag_id = await self._register_script_tag(client, loader_url)
            except ShopifyAPIError as e:
                # Stores on newer themes routinely reject script tags
                primary_failure = e
                logger.info(
                    f"Script tag registration unavailable for {shop_domain} "
                    f"({e.status_code}); falling back to theme injection"
                )
            else:
                installation = WidgetInstallation(
                    shop_domain=shop_domain,
                    mechanism=InstallationMechanism.PLATFORM_HOOK,
                    status=InstallationStatus.ACTIVE,
                    reference_id=script_tag_id,
                    loader_url=loader_url,
                    snippet=snippet,
                    generated_at=_utcnow(),
                )
                return await self._record_success(installation)

            try:
                installation, changed = await self._inject_into_theme(
                    client, shop_domain, loader_url, snippet, existing
                )
            except ShopifyAPIError as e:
                await self._mark_failed(existing)
                logger.warning(f"Widget provisioning failed for {shop_domain}: theme injection: {e}")
                raise ProvisionError(
                    f"Widget provisioning failed for {shop_domain}: "
                    f"script tag rejected and theme injection failed ({e.public_message()})",
                    primary_error=primary_failure,
                    fallback_error=e,
                ) from e
            except (NotFoundError, ExternalAPIError) as e:
                await self._mark_failed(existing)
                logger.warning(f"Widget provisioning failed for {shop_domain}: {e}")
                raise

        if not changed:
            logger.info(f"Widget already present in theme for {shop_domain}; nothing to do")
            return installation

        return await self._record_success(installation)

    async def _register_script_tag(self, client: ShopifyAdminClient, loader_url: str) -> str:
        """Reuse a script tag already pointing at the loader, else create one"""
        for tag in await client.get_script_tags(src=loader_url):
            if tag.src == loader_url:
                logger.info(f"Reusing script tag {tag.id} for {client.shop_domain}")
                return str(tag.id)

        tag = await client.create_script_tag(ScriptTagCreateRequest(src=loader_url))
        logger.info(f"Registered script tag {tag.id} for {client.shop_domain}")
        return str(tag.id)

    async def _inject_into_theme(
        self,
        client: ShopifyAdminClient,
        shop_domain: str,
        loader_url: str,
        snippet: str,
        existing: Optional[WidgetInstallation],
    ) -> Tuple[WidgetInstallation, bool]:
        """
        Splice the snippet into the live theme layout.

        Returns:
            (installation, changed) where changed is False when the marker was
            already present and nothing was written
        """
        theme = await self._get_main_theme(client)
        asset = await client.get_asset(theme.id, LAYOUT_ASSET_KEY)
        content = asset.value or ""

        if has_snippet(content):
            if (
                existing is not None
                and existing.is_active
                and existing.mechanism == InstallationMechanism.ASSET_INJECTION
                and existing.theme_id == str(theme.id)
            ):
                return existing, False

            # Marker present but the record is missing or stale
            installation = WidgetInstallation(
                shop_domain=shop_domain,
                mechanism=InstallationMechanism.ASSET_INJECTION,
                status=InstallationStatus.ACTIVE,
                theme_id=str(theme.id),
                loader_url=loader_url,
                snippet=snippet,
                generated_at=_utcnow(),
            )
            return installation, True

        try:
            await client.put_asset(theme.id, LAYOUT_ASSET_KEY, inject_snippet(content, snippet))
        except ShopifyAPIError as e:
            raise ExternalAPIError(
                "asset-write",
                f"Failed to write {LAYOUT_ASSET_KEY}: {e.message}",
                status_code=e.status_code,
            )

        logger.info(f"Injected widget snippet into theme {theme.id} for {shop_domain}")
        installation = WidgetInstallation(
            shop_domain=shop_domain,
            mechanism=InstallationMechanism.ASSET_INJECTION,
            status=InstallationStatus.ACTIVE,
            theme_id=str(theme.id),
            loader_url=loader_url,
            snippet=snippet,
            generated_at=_utcnow(),
        )
        return installation, True

    async def _get_main_theme(self, client: ShopifyAdminClient) -> ShopifyTheme:
        themes = await client.get_themes()
        for theme in themes:
            if theme.is_main:
                return theme
        raise NotFoundError("main-theme", f"No published theme found for {client.shop_domain}")

    async def _record_success(self, installation: WidgetInstallation) -> WidgetInstallation:
        stored = await self.registry.upsert_installation(installation)
        await self._update_account(installation.shop_domain, {
            "widget_installed": True,
            "widget_installed_at": _utcnow(),
            "last_provisioning_error": None,
        })
        logger.info(
            f"Widget installed for {installation.shop_domain} via {installation.mechanism.value}"
        )
        return stored

    async def _update_account(self, shop_domain: str, values: Dict[str, object]):
        # Provisioning never creates accounts; OAuth does
        if await self.registry.find_by_domain(shop_domain) is None:
            logger.debug(f"No shop account for {shop_domain}; widget flags not recorded")
            return
        await self.registry.upsert(shop_domain, values)

    async def _mark_failed(self, existing: Optional[WidgetInstallation]):
        if existing is None or existing.status == InstallationStatus.INACTIVE:
            return
        await self.registry.upsert_installation(
            existing.model_copy(update={"status": InstallationStatus.ERROR})
        )

    # =========================================================================
    # Remove
    # =========================================================================

    async def remove(self, shop_domain: str, access_token: str) -> WidgetInstallation:
        """
        Undo the recorded installation and retire the record.

        Raises:
            NotFoundError: installation, when nothing is installed
            ExternalAPIError: when the platform rejects the removal
        """
        installation = await self.registry.find_installation(shop_domain)
        if installation is None or installation.status == InstallationStatus.INACTIVE:
            raise NotFoundError("installation", f"No active widget installation for {shop_domain}")

        async with self.client_factory.admin(shop_domain, access_token) as client:
            if installation.mechanism == InstallationMechanism.PLATFORM_HOOK:
                await self._remove_script_tag(client, installation)
            else:
                await self._remove_from_theme(client, installation)

        retired = await self.registry.upsert_installation(
            installation.model_copy(update={"status": InstallationStatus.INACTIVE})
        )
        await self._update_account(shop_domain, {
            "widget_installed": False,
            "widget_removed_at": _utcnow(),
        })
        logger.info(f"Widget removed for {shop_domain} ({installation.mechanism.value})")
        return retired

    async def _remove_script_tag(self, client: ShopifyAdminClient, installation: WidgetInstallation):
        if not installation.reference_id:
            return
        try:
            await client.delete_script_tag(installation.reference_id)
        except ShopifyNotFoundError:
            logger.info(f"Script tag {installation.reference_id} already gone for {client.shop_domain}")

    async def _remove_from_theme(self, client: ShopifyAdminClient, installation: WidgetInstallation):
        if installation.theme_id:
            theme_id = int(installation.theme_id)
        else:
            theme_id = (await self._get_main_theme(client)).id

        asset = await client.get_asset(theme_id, LAYOUT_ASSET_KEY)
        content = asset.value or ""
        cleaned = strip_snippet(content)
        if cleaned == content:
            logger.info(f"No widget snippet left in theme {theme_id} for {client.shop_domain}")
            return

        try:
            await client.put_asset(theme_id, LAYOUT_ASSET_KEY, cleaned)
        except ShopifyAPIError as e:
            raise ExternalAPIError(
                "asset-write",
                f"Failed to write {LAYOUT_ASSET_KEY}: {e.message}",
                status_code=e.status_code,
            )
