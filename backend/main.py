"""
Genie Chat Widget Backend
FastAPI application: OAuth installation, widget provisioning and the
storefront chat API.

Run: uvicorn backend.main:app --reload
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.core.config import Settings, get_settings
from backend.core.db import Database
from backend.core.errors import AppError
from backend.routes.chat import chat_router
from backend.services.assistant_pipeline import AssistantPipeline
from backend.services.llm_client import LLMClient
from backend.services.tool_adapters import build_default_adapters
from integrations.shopify.client import ShopifyClientFactory
from integrations.shopify.customer_auth import CustomerAccountAuth
from integrations.shopify.installation import InstallationCoordinator
from integrations.shopify.provisioner import WidgetProvisioner
from integrations.shopify.registry import ShopRegistry
from integrations.shopify.routes import configure_shopify_routes

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def register_exception_handlers(app: FastAPI):
    """Structured JSON errors; nothing internal leaks from the catch-all"""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.error_type, "message": exc.public_message()},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "validation_error",
                "message": f"Invalid or missing fields: {', '.join(f for f in fields if f) or 'request'}",
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    llm: Optional[LLMClient] = None,
    shopify_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application and wire its components.

    Args:
        settings: Configuration (defaults to environment)
        database: Storage handle (defaults to settings.database_url)
        llm: Language model client (defaults to an OpenAI client from settings)
        shopify_transport: httpx transport for all Shopify calls (tests)
    """
    settings = settings or get_settings()
    database = database or Database(settings.database_url)
    llm = llm or LLMClient(
        api_key=settings.openai_api_key,
        model=settings.chat_model,
        base_url=settings.openai_base_url,
        timeout=settings.llm_timeout,
        max_retries=settings.llm_max_retries,
    )

    client_factory = ShopifyClientFactory(
        api_version=settings.shopify_api_version,
        timeout=settings.shopify_timeout,
        max_retries=settings.shopify_max_retries,
        transport=shopify_transport,
    )
    registry = ShopRegistry(database)
    provisioner = WidgetProvisioner(registry, client_factory, settings.public_base_url)
    coordinator = InstallationCoordinator(
        registry,
        provisioner,
        client_factory,
        client_id=settings.shopify_api_key,
        client_secret=settings.shopify_api_secret,
        provision_timeout=settings.provision_timeout,
    )
    customer_auth = CustomerAccountAuth(registry, client_factory, settings.public_base_url, settings.app_url)
    pipeline = AssistantPipeline(registry, build_default_adapters(client_factory), llm)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if hasattr(llm, "close"):
            await llm.close()
        await database.dispose()

    app = FastAPI(title="Genie Chat Widget Backend", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.database = database
    app.state.client_factory = client_factory
    app.state.registry = registry
    app.state.provisioner = provisioner
    app.state.coordinator = coordinator
    app.state.customer_auth = customer_auth
    app.state.pipeline = pipeline

    register_exception_handlers(app)
    configure_shopify_routes(app)
    app.include_router(chat_router)

    @app.get("/api/health")
    def health():
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


def build_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = build_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
