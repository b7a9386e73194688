"""
Assistant Pipeline
Turns one shopper message into a reply: classify intent, fetch shop data
with the matching tool adapter, assemble grounding context and ask the
language model. Every failure degrades to a fixed friendly reply.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from integrations.shopify.registry import ShopRegistry
from .intent_classifier import Intent, classify_intent
from .llm_client import LLMClient
from .tool_adapters import ToolAdapter, ToolRequest, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_REPLY = (
    "Thanks for your message! I'm having trouble looking that up right now. "
    "Please try again in a moment, or contact the store directly for help."
)

SYSTEM_PROMPT = """You are Genie, a friendly shopping assistant for the online store {shop}.
Answer the shopper's question in 2-4 short sentences.
Only use facts from the store data below. If the data does not contain the answer,
say so politely and suggest contacting the store. Never invent prices, stock or policies.

Store data (JSON):
{context}
"""

INTENT_TOOLS = {
    Intent.PRODUCT_SEARCH: "catalog_search",
    Intent.CART_INQUIRY: "cart_lookup",
    Intent.POLICY_QUESTION: "policy_search",
}


class CustomerContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_logged_in: bool = Field(default=False, alias="isLoggedIn")
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")


class CartContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cart_id: Optional[str] = Field(default=None, alias="cartId")
    item_count: Optional[int] = Field(default=None, alias="itemCount")


class ConversationTurn(BaseModel):
    """One message through the pipeline (not persisted)"""
    message: str
    shop_domain: str
    intent: Intent = Intent.GENERAL
    tool_results: List[ToolResult] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    reply: Optional[str] = None
    cart_id: Optional[str] = None


class AssistantReply(BaseModel):
    response: str
    cart_id: Optional[str] = None
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    intent: Intent = Intent.GENERAL


class AssistantPipeline:
    """
    Message pipeline behind the chat endpoints.

    respond() never raises.

    Usage:
        pipeline = AssistantPipeline(registry, adapters, llm)
        reply = await pipeline.respond("Do you have blue shoes?", "demo.myshopify.com")
    """

    def __init__(
        self,
        registry: ShopRegistry,
        adapters: List[ToolAdapter],
        llm: LLMClient,
        default_reply: str = DEFAULT_REPLY,
    ):
        self.registry = registry
        self.adapters = {adapter.name: adapter for adapter in adapters}
        self.llm = llm
        self.default_reply = default_reply

    async def respond(
        self,
        message: str,
        shop_domain: str,
        customer: Optional[CustomerContext] = None,
        cart: Optional[CartContext] = None,
    ) -> AssistantReply:
        customer = customer or CustomerContext()
        cart = cart or CartContext()
        turn = ConversationTurn(
            message=message or "",
            shop_domain=shop_domain or "",
            cart_id=cart.cart_id,
        )

        actions: List[Dict[str, Any]] = []
        try:
            turn.intent = classify_intent(turn.message)
            account = await self._load_account(turn.shop_domain)
            turn.tool_results = await self._dispatch(turn, account)
            turn.cart_id = self._resolved_cart_id(turn)
            turn.context = self._assemble_context(turn, customer)
            turn.reply = await self._synthesize(turn)
            actions = self._actions(turn)
        except Exception as e:
            logger.error(f"Assistant pipeline failed for {shop_domain}: {e}", exc_info=True)
            turn.reply = None

        if not turn.reply:
            turn.reply = self.default_reply

        return AssistantReply(
            response=turn.reply,
            cart_id=turn.cart_id,
            actions=actions,
            intent=turn.intent,
        )

    async def _load_account(self, shop_domain: str):
        if not shop_domain:
            return None
        try:
            return await self.registry.find_by_domain(shop_domain)
        except Exception as e:
            logger.warning(f"Shop lookup failed for {shop_domain}: {e}")
            return None

    async def _dispatch(self, turn: ConversationTurn, account) -> List[ToolResult]:
        """Run the adapters selected by the intent; each is failure-isolated"""
        tool_name = INTENT_TOOLS.get(turn.intent)
        adapters = [self.adapters[tool_name]] if tool_name in self.adapters else []
        if not adapters:
            return []

        request = ToolRequest(
            message=turn.message,
            shop_domain=turn.shop_domain,
            account=account,
            cart_id=turn.cart_id,
        )
        return list(await asyncio.gather(*(adapter.run(request) for adapter in adapters)))

    def _resolved_cart_id(self, turn: ConversationTurn) -> Optional[str]:
        """Cart id as seen by the storefront; an expired cart is dropped"""
        for result in turn.tool_results:
            if result.tool == "cart_lookup" and result.ok and turn.cart_id:
                cart = result.data.get("cart")
                return cart.get("id") if cart else None
        return turn.cart_id

    def _assemble_context(self, turn: ConversationTurn, customer: CustomerContext) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "shop": turn.shop_domain,
            "intent": turn.intent.value,
            "customer": {
                "isLoggedIn": customer.is_logged_in,
                "firstName": customer.first_name if customer.is_logged_in else None,
            },
            "cartId": turn.cart_id,
            "tools": {},
        }
        for result in turn.tool_results:
            context["tools"][result.tool] = {
                "data": result.data,
                "available": result.ok,
            }
        return context

    async def _synthesize(self, turn: ConversationTurn) -> Optional[str]:
        prompt = SYSTEM_PROMPT.format(
            shop=turn.shop_domain or "this store",
            context=json.dumps(turn.context, default=str, indent=2),
        )
        try:
            return await self.llm.complete(prompt, turn.message)
        except Exception as e:
            logger.warning(f"Reply synthesis failed for {turn.shop_domain}: {e}")
            return None

    def _actions(self, turn: ConversationTurn) -> List[Dict[str, Any]]:
        """UI hints for the widget derived from tool data"""
        actions: List[Dict[str, Any]] = []
        for result in turn.tool_results:
            if not result.ok:
                continue
            if result.tool == "catalog_search" and result.data.get("products"):
                actions.append({
                    "type": "show_products",
                    "products": [
                        {"id": p.get("id"), "title": p.get("title"), "price": p.get("price"),
                         "image": p.get("image"), "url": p.get("url")}
                        for p in result.data["products"]
                    ],
                })
            elif result.tool == "cart_lookup" and result.data.get("cart"):
                cart = result.data["cart"]
                actions.append({"type": "view_cart", "checkoutUrl": cart.get("checkout_url")})
            elif result.tool == "policy_search" and result.data.get("policies"):
                actions.extend(
                    {"type": "view_policy", "title": p["title"], "url": p.get("url")}
                    for p in result.data["policies"] if p.get("url")
                )
        return actions
