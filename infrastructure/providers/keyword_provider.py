# infrastructure/providers/keyword_provider.py
import asyncio
import json
import re
from typing import Dict, Any, List, Optional, Tuple

from domain.models.routing import ModelTier
from infrastructure.agents.prompts import MESSAGE_END, MESSAGE_START, PERSPECTIVE_MARKER
from infrastructure.providers.base import ModelProvider, ProviderResponse

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "dispute/billing": ("refund", "chargeback", "dispute", "overcharged", "charged twice",
                        "double charged", "billing error", "wrong amount", "incorrect invoice"),
    "support/product-inquiry": ("sku", "in stock", "stock", "availability", "available",
                                "price", "pricing", "specification", "product"),
    "sales": ("quote", "bulk", "purchase", "buy", "discount", "contract", "place an order",
              "order more"),
    "opportunity": ("upgrade", "also interested", "accessories", "accessory", "bundle",
                    "add-on", "expand"),
    "relationship": ("thank", "appreciate", "disappointed", "frustrated", "unhappy",
                     "love", "great service"),
}

# Detection order when a perspective finds nothing of its own
DOMINANT_ORDER = ("dispute/billing", "support/product-inquiry", "sales", "opportunity", "relationship")

PERSPECTIVE_CATEGORIES = {
    "sales": ("sales",),
    "support": ("support/product-inquiry",),
    "dispute_billing": ("dispute/billing",),
    "relationship": ("relationship",),
    "opportunity": ("opportunity",),
}

_SKU_PATTERN = re.compile(r"\b[A-Z]{2,}-\d+\b")
_AMOUNT_PATTERN = re.compile(r"[$€£]\s?(\d+(?:[.,]\d{1,2})?)")
_NEGATIVE_WORDS = ("disappointed", "frustrated", "unhappy", "angry", "terrible")
_POSITIVE_WORDS = ("thank", "appreciate", "love", "great", "happy")


class KeywordModelProvider(ModelProvider):
    """Deterministic offline provider for development and tests"""

    name = "keyword"

    def __init__(self, tier_models: Optional[Dict[ModelTier, str]] = None, latency_seconds: float = 0.0):
        self.tier_models = tier_models or {}
        self.latency_seconds = latency_seconds

    async def generate(self, prompt: str, model_tier: ModelTier, max_tokens: int) -> ProviderResponse:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        perspective = _extract_perspective(prompt)
        message = _extract_message(prompt)
        payload = self._analyse(perspective, message)
        text = json.dumps(payload)

        tokens_used = min(len(prompt) // 4 + len(text) // 4, len(prompt) // 4 + max_tokens)
        return ProviderResponse(
            text=text,
            tokens_used=tokens_used,
            model_tier=model_tier,
            model_name=self.tier_models.get(model_tier, f"keyword-{model_tier.value}"),
        )

    def _analyse(self, perspective: str, message: str) -> Dict[str, Any]:
        lowered = message.lower()
        hits = {category: _count_hits(lowered, keywords) for category, keywords in CATEGORY_KEYWORDS.items()}

        own_categories = PERSPECTIVE_CATEGORIES.get(perspective, ())
        own = [category for category in own_categories if hits[category]]
        if own:
            category = own[0]
            confidence = min(0.6 + 0.1 * hits[category], 0.9)
        else:
            category = next((c for c in DOMINANT_ORDER if hits[c]), "support/general")
            confidence = 0.45

        payload = self._verdict_fields(category, message, lowered)
        payload.update({
            "category": category,
            "confidence": round(confidence, 2),
            "rationale": f"{perspective or 'analyst'} matched {hits.get(category, 0)} keyword(s) for {category}",
        })
        return payload

    def _verdict_fields(self, category: str, message: str, lowered: str) -> Dict[str, Any]:
        if category == "dispute/billing":
            amount = _AMOUNT_PATTERN.search(message)
            return {
                "urgency": "high",
                "recommended_action": "Route to billing and confirm the charge history",
                "escalate": True,
                "dispute_type": "refund" if "refund" in lowered else "billing",
                "amount": float(amount.group(1).replace(",", ".")) if amount else None,
            }
        if category == "support/product-inquiry":
            return {
                "urgency": "medium",
                "recommended_action": "Answer with current price and stock from the ERP",
                "products": _SKU_PATTERN.findall(message),
                "needs_live_data": any(word in lowered for word in ("price", "stock", "availability")),
            }
        if category == "sales":
            return {
                "urgency": "medium",
                "recommended_action": "Prepare a quote and hand over to the account owner",
                "opportunity_stage": "quote" if "quote" in lowered else "inquiry",
            }
        if category == "opportunity":
            return {
                "urgency": "low",
                "recommended_action": "Suggest related products in the reply",
                "upsell_products": _SKU_PATTERN.findall(message),
            }
        if category == "relationship":
            negative = _count_hits(lowered, _NEGATIVE_WORDS)
            positive = _count_hits(lowered, _POSITIVE_WORDS)
            sentiment = max(-1.0, min(1.0, 0.3 * (positive - negative)))
            return {
                "urgency": "high" if negative else "low",
                "recommended_action": "Reply personally from the account owner",
                "sentiment": sentiment,
                "warmth": 0.7 if positive >= negative else 0.3,
            }
        return {
            "urgency": "low",
            "recommended_action": "Reply with the standard support template",
            "topic": "general",
        }


def _count_hits(text: str, keywords) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def _extract_perspective(prompt: str) -> str:
    for line in prompt.splitlines():
        if line.startswith(PERSPECTIVE_MARKER):
            return line[len(PERSPECTIVE_MARKER):].strip()
    return ""


def _extract_message(prompt: str) -> str:
    start = prompt.find(MESSAGE_START)
    end = prompt.rfind(MESSAGE_END)
    if start == -1 or end == -1 or end < start:
        return prompt
    lines: List[str] = prompt[start + len(MESSAGE_START):end].strip().splitlines()
    # Drop the From: header so sender addresses do not trigger keywords
    return "\n".join(line for line in lines if not line.startswith("From: "))
