"""
Application Settings
Environment-driven configuration for the Genie chat widget backend.
"""

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration"""

    # Shopify app credentials
    shopify_api_key: str = ""
    shopify_api_secret: str = ""
    shopify_api_version: str = "2025-07"
    shopify_timeout: float = 15.0
    shopify_max_retries: int = 3

    # Where merchants land after the OAuth callback
    app_url: str = "http://localhost:3000"
    # Public address of this service (loader script host)
    public_base_url: str = "http://localhost:8000"
    # Full widget bundle injected by the loader
    widget_script_url: Optional[str] = None

    database_url: str = "sqlite+aiosqlite:///./genie.db"

    # Language model
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    chat_model: str = "gpt-4o-mini"
    llm_timeout: float = 20.0
    llm_max_retries: int = 1

    provision_timeout: float = 45.0

    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @property
    def widget_bundle_url(self) -> str:
        return self.widget_script_url or f"{self.public_base_url.rstrip('/')}/chatbot-widget.js"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process environment (and .env if present)"""
        load_dotenv()
        return cls(
            shopify_api_key=os.getenv("SHOPIFY_API_KEY", os.getenv("VITE_SHOPIFY_API_KEY", "")),
            shopify_api_secret=os.getenv("SHOPIFY_API_SECRET", ""),
            shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2025-07"),
            shopify_timeout=float(os.getenv("SHOPIFY_TIMEOUT", "15")),
            shopify_max_retries=int(os.getenv("SHOPIFY_MAX_RETRIES", "3")),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            widget_script_url=os.getenv("WIDGET_SCRIPT_URL") or None,
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./genie.db"),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            chat_model=os.getenv("CHAT_MODEL", "gpt-4o-mini"),
            llm_timeout=float(os.getenv("LLM_TIMEOUT", "20")),
            llm_max_retries=int(os.getenv("LLM_MAX_RETRIES", "1")),
            provision_timeout=float(os.getenv("PROVISION_TIMEOUT", "45")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
