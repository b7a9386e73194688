"""Keyword intent classification for shopper messages."""

from enum import Enum
from typing import Tuple


class Intent(str, Enum):
    PRODUCT_SEARCH = "product_search"
    CART_INQUIRY = "cart_inquiry"
    POLICY_QUESTION = "policy_question"
    GENERAL = "general"


PRODUCT_KEYWORDS: Tuple[str, ...] = (
    "product", "looking for", "search", "find", "buy", "do you have", "show me",
    "recommend", "price", "how much", "in stock", "available", "sell",
)

CART_KEYWORDS: Tuple[str, ...] = (
    "cart", "checkout", "check out", "basket", "my order", "added",
)

POLICY_KEYWORDS: Tuple[str, ...] = (
    "policy", "policies", "return", "refund", "shipping", "delivery",
    "exchange", "privacy", "terms", "warranty",
)


def classify_intent(message: str) -> Intent:
    """
    Map a message to an intent by keyword containment.

    Branches are checked in fixed order (product search, cart, policy) and
    the first match wins.
    """
    text = (message or "").lower()

    if any(keyword in text for keyword in PRODUCT_KEYWORDS):
        return Intent.PRODUCT_SEARCH
    if any(keyword in text for keyword in CART_KEYWORDS):
        return Intent.CART_INQUIRY
    if any(keyword in text for keyword in POLICY_KEYWORDS):
        return Intent.POLICY_QUESTION
    return Intent.GENERAL
