"""Shopify integration module"""
from .client import (
    ShopifyAdminClient,
    ShopifyAPIError,
    ShopifyAuthError,
    ShopifyClientFactory,
    ShopifyStorefrontClient,
)
from .customer_auth import CustomerAccountAuth
from .installation import InstallationCoordinator
from .provisioner import WidgetProvisioner
from .registry import ShopRegistry

__all__ = [
    'ShopifyAdminClient',
    'ShopifyStorefrontClient',
    'ShopifyClientFactory',
    'ShopifyAuthError',
    'ShopifyAPIError',
    'CustomerAccountAuth',
    'InstallationCoordinator',
    'WidgetProvisioner',
    'ShopRegistry',
]
