from typing import Dict, Any, List, Optional, Awaitable
from pydantic import BaseModel, Field
import asyncio
import re
import structlog

from commerce_agent.domain.context.mode_detector import UNIT_QUANTITY
from commerce_agent.domain.models.conversation_state import ConversationState, Mode

logger = structlog.get_logger(__name__)


CATEGORY_ALIASES: Dict[str, str] = {
    "laptop": "laptops", "notebook": "laptops", "ultrabook": "laptops",
    "monitor": "monitors", "display": "monitors", "screen": "monitors",
    "headphone": "headphones", "headset": "headphones", "earbud": "headphones",
    "chair": "furniture", "desk": "furniture", "furniture": "furniture",
    "mouse": "accessories", "mice": "accessories", "keyboard": "accessories", "accessory": "accessories",
    "accessories": "accessories", "phone": "phones", "tablet": "tablets",
}
DEFAULT_BRANDS = ["acme", "nimbus", "vertex", "ergopro", "apple", "dell", "hp", "lenovo", "samsung", "sony"]

_AMOUNT = r"\$?\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?"
PRICE_MAX = re.compile(r"\b(?:under|below|less\s+than|cheaper\s+than|max(?:imum)?|up\s+to|within)\s+" + _AMOUNT, re.I)
PRICE_MIN = re.compile(r"\b(?:over|above|more\s+than|at\s+least|from|starting\s+at)\s+" + _AMOUNT, re.I)
PRICE_BETWEEN = re.compile(r"\bbetween\s+" + _AMOUNT + r"\s+and\s+" + _AMOUNT, re.I)
SKU = re.compile(r"\b([A-Z]{2,5}-?\d{2,6})\b")

SYSTEM_PROMPTS = {
    Mode.B2C: (
        "You are a friendly shopping assistant. Help the customer discover products, compare options "
        "and manage their cart. Keep answers short and mention prices in the customer's currency."
    ),
    Mode.B2B: (
        "You are a business purchasing assistant. Help the buyer with bulk quantities, tiered pricing, "
        "availability and lead times. Be precise about quantities, unit prices and totals."
    ),
}


def _amount(value: str) -> float:
    return float(value.replace(",", ""))


class ExtractedEntities(BaseModel):
    """Commerce entities found in an utterance"""
    categories: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    skus: List[str] = Field(default_factory=list)
    quantities: List[int] = Field(default_factory=list)


def extract_entities(utterance: str, brands: Optional[List[str]] = None) -> ExtractedEntities:
    """Categories, brands, price range, SKUs and unit quantities in an utterance"""

    words = re.findall(r"[a-z]+", utterance.lower())
    categories: List[str] = []
    for word in words:
        category = CATEGORY_ALIASES.get(word) or CATEGORY_ALIASES.get(word.rstrip("s"))
        if category and category not in categories:
            categories.append(category)

    entities = ExtractedEntities(
        categories=categories,
        brands=[brand for brand in (brands or DEFAULT_BRANDS) if brand in words],
        skus=list(dict.fromkeys(SKU.findall(utterance))),
        quantities=[int(m.group(1).replace(",", "")) for m in UNIT_QUANTITY.finditer(utterance)],
    )

    between = PRICE_BETWEEN.search(utterance)
    if between:
        low, high = sorted([_amount(between.group(1)), _amount(between.group(2))])
        entities.price_min, entities.price_max = low, high
    else:
        high = PRICE_MAX.search(utterance)
        low = PRICE_MIN.search(utterance)
        if high:
            entities.price_max = _amount(high.group(1))
        if low:
            entities.price_min = _amount(low.group(1))
    return entities


class EnrichedContext(BaseModel):
    """Context assembled for action selection"""
    mode: Mode
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    cart_inventory: Optional[Dict[str, Any]] = None
    cart_pricing: Optional[Dict[str, Any]] = None
    account: Optional[Dict[str, Any]] = None
    degraded_fields: List[str] = Field(default_factory=list)
    system_prompt: str = ""


class ContextEnricher:
    """Extracts entities and fans out independent context reads"""

    def __init__(self, data_access: Any, dependency_timeout_ms: int = 150, brands: Optional[List[str]] = None):
        self.data_access = data_access
        self.dependency_timeout_ms = dependency_timeout_ms
        self.brands = [b.lower() for b in (brands or DEFAULT_BRANDS)]

    def extract_entities(self, utterance: str) -> ExtractedEntities:
        return extract_entities(utterance, self.brands)

    async def enrich_context(self, state: ConversationState, mode: Mode, utterance: str) -> EnrichedContext:
        context = EnrichedContext(
            mode=mode,
            entities=self.extract_entities(utterance),
            system_prompt=SYSTEM_PROMPTS.get(mode, SYSTEM_PROMPTS[Mode.B2C]),
        )

        branches: Dict[str, Awaitable[Any]] = {}
        product_ids = list(dict.fromkeys(item.product_id for item in state.cart.items))
        if product_ids:
            branches["cart_inventory"] = self.data_access.get_inventory(product_ids)
            branches["cart_pricing"] = self.data_access.get_pricing(product_ids, mode.value)
        if mode == Mode.B2B and state.context.customer_id:
            branches["account"] = self.data_access.custom_extension(
                "getAccountContext", {"customer_id": state.context.customer_id}
            )

        if not branches:
            return context

        timeout = self.dependency_timeout_ms / 1000
        results = await asyncio.gather(
            *(asyncio.wait_for(call, timeout=timeout) for call in branches.values()),
            return_exceptions=True,
        )
        for field, result in zip(branches, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                context.degraded_fields.append(field)
                logger.warning("Context branch degraded", field=field, error=str(result) or type(result).__name__)
            else:
                setattr(context, field, result)

        return context
