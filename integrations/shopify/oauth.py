"""
Shopify OAuth Helpers
Shop domain validation, callback HMAC verification and the
authorization-code-for-token exchange.
"""

import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Mapping

import httpx

from backend.core.errors import ExternalAPIError, ValidationError

logger = logging.getLogger(__name__)

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


def validate_shop_domain(shop: str) -> str:
    """
    Check that a shop parameter is a bare *.myshopify.com hostname.

    Returns:
        The lower-cased domain

    Raises:
        ValidationError: If the domain is empty or malformed
    """
    domain = (shop or "").strip().lower()
    if not domain:
        raise ValidationError("Shop domain required")
    if not SHOP_DOMAIN_PATTERN.match(domain):
        raise ValidationError(f"Invalid shop domain: {shop}")
    return domain


def verify_oauth_hmac(params: Mapping[str, str], secret: str) -> bool:
    """
    Verify the HMAC Shopify appends to OAuth callback query strings.

    Shopify signs the remaining query parameters, sorted and joined as
    `key=value&key=value`, with HMAC-SHA256 keyed by the app secret and sends
    the hex digest in the `hmac` parameter.

    Raises:
        ValidationError: If the signature is missing or invalid
    """
    provided = params.get("hmac")
    if not provided:
        raise ValidationError("Missing HMAC parameter")

    if not secret:
        raise ValidationError("Missing API secret")

    message = "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in ("hmac", "signature")
    )

    calculated = hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    # Constant-time comparison
    if not hmac.compare_digest(calculated, provided):
        logger.warning("OAuth callback HMAC verification failed")
        raise ValidationError("Invalid HMAC signature")

    return True


async def exchange_code_for_token(
    http: httpx.AsyncClient,
    shop: str,
    code: str,
    client_id: str,
    client_secret: str,
) -> Dict[str, Any]:
    """
    Exchange an authorization code for a permanent Admin API access token.

    Returns:
        Token payload (contains at least `access_token`)

    Raises:
        ExternalAPIError: operation `token-exchange` on any failure
    """
    try:
        response = await http.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
            },
            headers={"Accept": "application/json"},
        )
    except httpx.RequestError as e:
        raise ExternalAPIError("token-exchange", f"Failed to exchange code for token: {e}")

    if response.status_code != 200:
        raise ExternalAPIError(
            "token-exchange",
            f"Failed to exchange code for token (HTTP {response.status_code})",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError:
        raise ExternalAPIError("token-exchange", "Token endpoint returned invalid JSON")

    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise ExternalAPIError("token-exchange", "Token endpoint response missing access_token")

    return payload
