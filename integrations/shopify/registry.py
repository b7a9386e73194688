"""
Shop Registry
Repository for ShopAccount, WidgetInstallation and CustomerSession records,
keyed by shop domain.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.db import Database
from backend.models.shop import CustomerSessionRecord, ShopRecord, WidgetInstallationRecord
from .models import CustomerSession, ShopAccount, WidgetInstallation

logger = logging.getLogger(__name__)

# Columns callers may write through upsert()
SHOP_FIELDS = {
    "access_token",
    "storefront_access_token",
    "customer_account_client_id",
    "customer_account_client_secret",
    "widget_installed",
    "widget_installed_at",
    "widget_removed_at",
    "last_provisioning_error",
}


class ShopRegistry:
    """
    Narrow repository over the shop tables.

    Every write is an upsert by domain, so there is at most one
    ShopAccount and one WidgetInstallation per shop.

    Usage:
        registry = ShopRegistry(database)
        account = await registry.upsert("demo.myshopify.com", {"access_token": "tok"})
        account = await registry.find_by_domain("demo.myshopify.com")
    """

    def __init__(self, database: Database):
        self.database = database

    # =========================================================================
    # ShopAccount
    # =========================================================================

    async def find_by_domain(self, shop_domain: str) -> Optional[ShopAccount]:
        async with self.database.session() as session:
            record = await self._get_shop(session, shop_domain)
            return ShopAccount.model_validate(record) if record else None

    async def upsert(self, shop_domain: str, values: Dict[str, Any]) -> ShopAccount:
        """
        Insert or update the account for a domain.

        Args:
            shop_domain: Unique key
            values: Column values to write; unknown keys are rejected

        Returns:
            The stored ShopAccount
        """
        unknown = set(values) - SHOP_FIELDS
        if unknown:
            raise ValueError(f"Unknown ShopAccount fields: {sorted(unknown)}")

        try:
            return await self._upsert_shop(shop_domain, values)
        except IntegrityError:
            # Lost an insert race on the unique domain; the row exists now
            logger.debug(f"Concurrent insert for {shop_domain}, retrying as update")
            return await self._upsert_shop(shop_domain, values)

    async def _upsert_shop(self, shop_domain: str, values: Dict[str, Any]) -> ShopAccount:
        async with self.database.session() as session:
            record = await self._get_shop(session, shop_domain)
            if record is None:
                if not values.get("access_token"):
                    raise ValueError("access_token is required to create a ShopAccount")
                record = ShopRecord(shop_domain=shop_domain, **values)
                session.add(record)
                logger.info(f"Created shop account: {shop_domain}")
            else:
                for key, value in values.items():
                    setattr(record, key, value)
                logger.debug(f"Updated shop account: {shop_domain} ({', '.join(sorted(values))})")

            await session.commit()
            await session.refresh(record)
            return ShopAccount.model_validate(record)

    async def _get_shop(self, session: AsyncSession, shop_domain: str) -> Optional[ShopRecord]:
        result = await session.execute(
            select(ShopRecord).where(ShopRecord.shop_domain == shop_domain)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # WidgetInstallation
    # =========================================================================

    async def find_installation(self, shop_domain: str) -> Optional[WidgetInstallation]:
        async with self.database.session() as session:
            record = await self._get_installation(session, shop_domain)
            return WidgetInstallation.model_validate(record) if record else None

    async def upsert_installation(self, installation: WidgetInstallation) -> WidgetInstallation:
        """Replace the installation record for the shop"""
        values = {
            "mechanism": installation.mechanism.value,
            "status": installation.status.value,
            "reference_id": installation.reference_id,
            "theme_id": installation.theme_id,
            "loader_url": installation.loader_url,
            "snippet": installation.snippet,
        }
        if installation.generated_at is not None:
            values["generated_at"] = installation.generated_at

        try:
            return await self._upsert_installation(installation.shop_domain, values)
        except IntegrityError:
            logger.debug(f"Concurrent installation insert for {installation.shop_domain}, retrying")
            return await self._upsert_installation(installation.shop_domain, values)

    async def _upsert_installation(self, shop_domain: str, values: Dict[str, Any]) -> WidgetInstallation:
        async with self.database.session() as session:
            record = await self._get_installation(session, shop_domain)
            if record is None:
                record = WidgetInstallationRecord(shop_domain=shop_domain, **values)
                session.add(record)
            else:
                for key, value in values.items():
                    setattr(record, key, value)

            await session.commit()
            await session.refresh(record)
            return WidgetInstallation.model_validate(record)

    async def _get_installation(
        self, session: AsyncSession, shop_domain: str
    ) -> Optional[WidgetInstallationRecord]:
        result = await session.execute(
            select(WidgetInstallationRecord).where(WidgetInstallationRecord.shop_domain == shop_domain)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # CustomerSession
    # =========================================================================

    async def find_customer_session(self, shop_domain: str, customer_email: str) -> Optional[CustomerSession]:
        async with self.database.session() as session:
            record = await self._get_customer_session(session, shop_domain, customer_email)
            return CustomerSession.model_validate(record) if record else None

    async def upsert_customer_session(self, customer: CustomerSession) -> CustomerSession:
        """Replace the stored token for a shopper (keyed by shop and email)"""
        values = {
            "customer_access_token": customer.customer_access_token,
            "customer_id": customer.customer_id,
            "session_id": customer.session_id,
        }

        try:
            return await self._upsert_customer_session(customer.shop_domain, customer.customer_email, values)
        except IntegrityError:
            logger.debug(f"Concurrent customer session insert for {customer.shop_domain}, retrying")
            return await self._upsert_customer_session(customer.shop_domain, customer.customer_email, values)

    async def _upsert_customer_session(
        self, shop_domain: str, customer_email: str, values: Dict[str, Any]
    ) -> CustomerSession:
        async with self.database.session() as session:
            record = await self._get_customer_session(session, shop_domain, customer_email)
            if record is None:
                record = CustomerSessionRecord(shop_domain=shop_domain, customer_email=customer_email, **values)
                session.add(record)
            else:
                for key, value in values.items():
                    setattr(record, key, value)

            await session.commit()
            await session.refresh(record)
            return CustomerSession.model_validate(record)

    async def _get_customer_session(
        self, session: AsyncSession, shop_domain: str, customer_email: str
    ) -> Optional[CustomerSessionRecord]:
        result = await session.execute(
            select(CustomerSessionRecord).where(
                CustomerSessionRecord.shop_domain == shop_domain,
                CustomerSessionRecord.customer_email == customer_email,
            )
        )
        return result.scalar_one_or_none()
