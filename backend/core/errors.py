"""
Error Taxonomy
Application errors and the HTTP status each one maps to.
"""

import re
from typing import Optional

# Shopify token prefixes (admin, storefront, app secret, custom app)
_TOKEN_PATTERN = re.compile(r"\b(shp(?:at|ca|pa|ss|ua)_[A-Za-z0-9]+)")
_MAX_MESSAGE_LENGTH = 300


def sanitize_message(message: str) -> str:
    """Redact access tokens and cap message length"""
    cleaned = _TOKEN_PATTERN.sub("[redacted]", str(message))
    if len(cleaned) > _MAX_MESSAGE_LENGTH:
        cleaned = cleaned[:_MAX_MESSAGE_LENGTH] + "..."
    return cleaned


class AppError(Exception):
    """Base class for errors rendered as structured JSON"""
    http_status = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def public_message(self) -> str:
        return self.message


class ValidationError(AppError):
    """Missing or malformed required input"""
    http_status = 400
    error_type = "validation_error"


class NotFoundError(AppError):
    """Unknown shop, missing theme or missing installation"""
    http_status = 404
    error_type = "not_found"

    def __init__(self, resource: str, message: Optional[str] = None):
        super().__init__(message or f"Not found: {resource}")
        self.resource = resource


class ExternalAPIError(AppError):
    """Platform or language-model call failed or returned non-success"""
    http_status = 500
    error_type = "external_api_error"

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code

    def public_message(self) -> str:
        return sanitize_message(f"{self.operation}: {self.message}")


class ProvisionError(AppError):
    """Both widget provisioning mechanisms failed"""
    http_status = 500
    error_type = "provision_error"

    def __init__(
        self,
        message: str,
        primary_error: Optional[Exception] = None,
        fallback_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.primary_error = primary_error
        self.fallback_error = fallback_error

    def public_message(self) -> str:
        return sanitize_message(self.message)
