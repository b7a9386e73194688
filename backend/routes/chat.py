"""
Chat API Routes
Storefront chat endpoint and the legacy single-field endpoint. Both call the
same AssistantPipeline in-process.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator, model_validator

from backend.services.assistant_pipeline import (
    AssistantPipeline,
    AssistantReply,
    CartContext,
    CustomerContext,
)

logger = logging.getLogger(__name__)

chat_router = APIRouter(prefix="/api", tags=["Chat"])


class LegacyChatRequest(BaseModel):
    """Chat body that never fails validation; unusable fields fall back to defaults"""
    message: str = ""
    shop: str = ""

    @model_validator(mode="before")
    @classmethod
    def require_object(cls, data: Any) -> Any:
        return data if isinstance(data, dict) else {}

    @field_validator("message", "shop", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


class StorefrontChatRequest(LegacyChatRequest):
    customer: CustomerContext = Field(default_factory=CustomerContext)
    cart: CartContext = Field(default_factory=CartContext)
    session: Optional[Dict[str, Any]] = None

    @field_validator("customer", "cart", mode="before")
    @classmethod
    def parse_context(cls, value: Any, info: ValidationInfo) -> Any:
        model = CustomerContext if info.field_name == "customer" else CartContext
        if value is None:
            return model()
        try:
            return model.model_validate(value)
        except ValidationError:
            logger.info(f"Ignoring malformed {info.field_name} context in chat request")
            return model()

    @field_validator("session", mode="before")
    @classmethod
    def drop_malformed_session(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None


def get_pipeline(request: Request) -> AssistantPipeline:
    return request.app.state.pipeline


def _render(reply: AssistantReply) -> Dict[str, Any]:
    return {
        "success": True,
        "response": reply.response,
        "cartId": reply.cart_id,
        "actions": reply.actions,
    }


@chat_router.post("/chat/storefront")
async def storefront_chat(
    body: Optional[StorefrontChatRequest] = None,
    pipeline: AssistantPipeline = Depends(get_pipeline),
):
    """Answer a shopper message from the storefront widget (always 200)"""
    body = body or StorefrontChatRequest()
    reply = await pipeline.respond(body.message, body.shop, body.customer, body.cart)
    logger.info(f"Chat reply for {body.shop or 'unknown shop'} (intent={reply.intent.value})")
    return _render(reply)


@chat_router.post("/chat")
async def legacy_chat(
    body: Optional[LegacyChatRequest] = None,
    pipeline: AssistantPipeline = Depends(get_pipeline),
):
    """Legacy entry point: same pipeline with default customer/cart/session"""
    body = body or LegacyChatRequest()
    reply = await pipeline.respond(body.message, body.shop, CustomerContext(), CartContext())
    return _render(reply)
