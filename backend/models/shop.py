"""
Shop persistence models
SQLAlchemy rows for merchant credentials and widget installations.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from backend.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShopRecord(Base):
    """One row per merchant domain"""

    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)

    access_token = Column(String(500), nullable=False)
    storefront_access_token = Column(String(500), nullable=True)
    customer_account_client_id = Column(String(255), nullable=True)
    customer_account_client_secret = Column(String(500), nullable=True)

    widget_installed = Column(Boolean, default=False, nullable=False)
    widget_installed_at = Column(DateTime(timezone=True), nullable=True)
    widget_removed_at = Column(DateTime(timezone=True), nullable=True)
    last_provisioning_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class WidgetInstallationRecord(Base):
    """Provisioned loader for a shop (one record per shop)"""

    __tablename__ = "widget_installations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)

    # platform-hook | asset-injection
    mechanism = Column(String(32), nullable=False)
    reference_id = Column(String(64), nullable=True)
    theme_id = Column(String(64), nullable=True)
    # active | inactive | error
    status = Column(String(16), nullable=False, default="active")

    loader_url = Column(Text, nullable=False)
    snippet = Column(Text, nullable=False)

    generated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class CustomerSessionRecord(Base):
    """Customer Account API token stored after a shopper logs in"""

    __tablename__ = "customer_sessions"
    __table_args__ = (UniqueConstraint("shop_domain", "customer_email", name="uq_customer_session"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    customer_email = Column(String(255), nullable=False)

    customer_access_token = Column(String(1000), nullable=False)
    customer_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
