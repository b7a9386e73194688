"""
Shopify Integration Models
Pydantic models for Shopify API payloads and the persisted shop/widget entities.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class InstallationMechanism(str, Enum):
    """How the widget loader reached the storefront"""
    PLATFORM_HOOK = "platform-hook"
    ASSET_INJECTION = "asset-injection"


class InstallationStatus(str, Enum):
    """Widget installation lifecycle status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class ThemeRole(str, Enum):
    """Shopify theme role"""
    MAIN = "main"
    UNPUBLISHED = "unpublished"
    DEMO = "demo"
    DEVELOPMENT = "development"


# =============================================================================
# Persisted Entities
# =============================================================================

class ShopAccount(BaseModel):
    """Merchant credential record, one per shop domain"""
    model_config = ConfigDict(from_attributes=True)

    shop_domain: str
    access_token: str
    storefront_access_token: Optional[str] = None
    customer_account_client_id: Optional[str] = None
    customer_account_client_secret: Optional[str] = None
    widget_installed: bool = False
    widget_installed_at: Optional[datetime] = None
    widget_removed_at: Optional[datetime] = None
    last_provisioning_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WidgetInstallation(BaseModel):
    """Provisioned widget loader for one shop"""
    model_config = ConfigDict(from_attributes=True)

    shop_domain: str
    mechanism: InstallationMechanism
    status: InstallationStatus = InstallationStatus.ACTIVE
    reference_id: Optional[str] = None
    theme_id: Optional[str] = None
    loader_url: str
    snippet: str
    generated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == InstallationStatus.ACTIVE

    def to_summary(self) -> Dict[str, Any]:
        """Public view returned by the script endpoint"""
        return {
            "shop": self.shop_domain,
            "mechanism": self.mechanism.value,
            "status": self.status.value,
            "referenceId": self.reference_id,
            "themeId": self.theme_id,
            "scriptUrl": self.loader_url,
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class CustomerSession(BaseModel):
    """Customer Account API token for a logged-in shopper, one per shop and email"""
    model_config = ConfigDict(from_attributes=True)

    shop_domain: str
    customer_email: str
    customer_access_token: str
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Shop Models
# =============================================================================

class ShopInfo(BaseModel):
    """Shopify shop information"""
    id: int
    name: str
    email: Optional[str] = None
    domain: Optional[str] = None
    myshopify_domain: Optional[str] = None
    shop_owner: Optional[str] = None
    currency: str = "USD"
    money_format: Optional[str] = None
    timezone: Optional[str] = None
    plan_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Script Tag / Theme Models
# =============================================================================

class ScriptTag(BaseModel):
    """Shopify script tag registration"""
    id: int
    src: str
    event: str = "onload"
    display_scope: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScriptTagCreateRequest(BaseModel):
    """Request model for registering a script tag"""
    src: str
    event: str = "onload"
    display_scope: str = "online_store"


class ShopifyTheme(BaseModel):
    """Shopify theme"""
    id: int
    name: str
    role: str
    previewable: bool = True
    processing: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_main(self) -> bool:
        return self.role == ThemeRole.MAIN.value


class ThemeAsset(BaseModel):
    """Shopify theme asset (text assets only)"""
    key: str
    value: Optional[str] = None
    theme_id: Optional[int] = None
    checksum: Optional[str] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Policy Models
# =============================================================================

class ShopifyPolicy(BaseModel):
    """Shopify store policy"""
    title: str
    body: str
    url: Optional[str] = None
    handle: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Catalog / Cart Models
# =============================================================================

class CatalogProduct(BaseModel):
    """Product summary returned by catalog search"""
    id: str
    title: str
    handle: Optional[str] = None
    vendor: Optional[str] = None
    price: Optional[str] = None
    available: bool = True
    total_inventory: Optional[int] = None
    image: Optional[str] = None
    url: Optional[str] = None


class CartLine(BaseModel):
    """Single storefront cart line"""
    title: str
    variant_title: Optional[str] = None
    quantity: int = 1
    amount: Optional[str] = None
    currency: Optional[str] = None


class StorefrontCart(BaseModel):
    """Storefront cart snapshot"""
    id: str
    checkout_url: Optional[str] = None
    total_quantity: int = 0
    subtotal: Optional[str] = None
    currency: Optional[str] = None
    lines: List[CartLine] = Field(default_factory=list)
