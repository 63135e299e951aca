from typing import Dict, Any, List, Optional, AsyncIterator
import re
import uuid

from commerce_agent.domain.context.context_enricher import extract_entities
from commerce_agent.domain.models.action import ToolSpec
from commerce_agent.domain.models.conversation_state import ToolCall
from commerce_agent.infrastructure.llm.model_provider import ModelProvider, ModelResponse


HELP_MESSAGE = (
    "I can help you search for and compare products, check prices and stock, and manage your cart. "
    "What are you looking for today?"
)

_ADD_TO_CART = re.compile(r"\badd\b.*\b(cart|basket)\b|\bbuy\b", re.I)
_REMOVE = re.compile(r"\b(remove|delete|take\s+out)\b", re.I)
_SET_QUANTITY = re.compile(r"\b(change|set|update)\b.*\bto\s+(\d+)\b", re.I)
_VIEW_CART = re.compile(r"\b(show|view|what'?s\s+in|see|check)\b.*\b(cart|basket)\b|\bcart\s+(summary|total)\b", re.I)
_BULK_PRICING = re.compile(r"\b(bulk|volume|wholesale|tier(ed)?)\b.*\bpric", re.I)
_CREDIT = re.compile(r"\b(credit\s+(limit|line|balance|status)|available\s+credit|open\s+invoices?|outstanding\s+invoices?|payment\s+terms)\b", re.I)
_AVAILABILITY = re.compile(r"\b(availability|available|lead\s+time|in\s+stock|stock)\b", re.I)
_PRICE = re.compile(r"\b(price|cost|how\s+much)\b", re.I)
_SEARCH = re.compile(r"\b(show|find|search|looking\s+for|need|want|recommend|browse)\b", re.I)
_CLEAR_CART = re.compile(r"\b(clear|empty)\b.*\b(cart|basket)\b", re.I)
_CONFIRM = re.compile(r"\b(yes|confirm(ed)?)\b", re.I)
_COMPARE = re.compile(r"\b(compare|comparison|versus|vs\.?|difference\s+between)\b", re.I)
_SAMPLES = re.compile(r"\bsamples?\b", re.I)
_DEMO = re.compile(r"\b(demo|demonstration)\b", re.I)
_IN_PERSON = re.compile(r"\b(in[\s-]person|on[\s-]?site)\b", re.I)
_TAX_EXEMPT = re.compile(r"\btax[\s-]?exempt(ion)?\b|\bresale\s+certificate\b", re.I)
_CERTIFICATE = re.compile(r"\b([A-Z]{2}-[A-Z0-9]{5}-[A-Z0-9]{4})\b")
_STATE = re.compile(r"\b(?:to|in|for|state)\s+([A-Z]{2})\b")
_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_TIME = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_LEADING_NUMBER = re.compile(r"\b(?:add|buy)\s+(\d+)\b", re.I)
_WORD = re.compile(r"\S+\s*")
_STOPWORDS = {
    "show", "me", "find", "search", "for", "looking", "i", "need", "want", "some", "a", "an", "the",
    "please", "can", "you", "recommend", "browse", "under", "below", "over", "above", "between", "and",
    "less", "than", "more", "at", "least", "up", "to", "with", "of", "my", "any",
}


def _call(name: str, args: Dict[str, Any]) -> ToolCall:
    return ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=name, args=args)


class HeuristicModelProvider(ModelProvider):
    """Deterministic rule-based planner

    Maps the latest user message to at most one tool call from the offered
    menu. Useful for development, demos and tests without a hosted model.
    """

    async def invoke(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> ModelResponse:
        utterance = next((m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), "")
        offered = {tool.name for tool in tools}
        call = self.plan(utterance, offered)
        if call is None:
            return ModelResponse(content=HELP_MESSAGE)
        return ModelResponse(tool_calls=[call])

    async def astream(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> AsyncIterator[ModelResponse]:
        """Replies are streamed word by word"""

        response = await self.invoke(messages, tools)
        for piece in _WORD.findall(response.content):
            yield ModelResponse(content=piece)
        if response.tool_calls:
            yield ModelResponse(tool_calls=response.tool_calls)

    def plan(self, utterance: str, offered: set) -> Optional[ToolCall]:
        entities = extract_entities(utterance)
        sku = entities.skus[0] if entities.skus else None
        quantity = entities.quantities[0] if entities.quantities else None

        if _TAX_EXEMPT.search(utterance) and "apply_tax_exemption" in offered:
            call = self._tax_exemption(utterance)
            if call is not None:
                return call

        if sku and quantity and _BULK_PRICING.search(utterance) and "get_bulk_pricing" in offered:
            return _call("get_bulk_pricing", {"sku": sku, "quantity": quantity})

        if sku and quantity and _AVAILABILITY.search(utterance) and "check_bulk_availability" in offered:
            return _call("check_bulk_availability", {"sku": sku, "quantity": quantity})

        if _CREDIT.search(utterance) and "get_account_credit" in offered:
            return _call("get_account_credit", {})

        if sku and _SAMPLES.search(utterance) and "request_product_samples" in offered:
            args: Dict[str, Any] = {"product_ids": entities.skus[:5]}
            state = _STATE.search(utterance)
            if state:
                args["shipping_state"] = state.group(1)
            return _call("request_product_samples", args)

        date, time = _DATE.search(utterance), _TIME.search(utterance)
        if sku and date and time and _DEMO.search(utterance) and "schedule_product_demo" in offered:
            return _call("schedule_product_demo", {
                "product_ids": entities.skus[:5],
                "date": date.group(1),
                "time": f"{int(time.group(1)):02d}:{time.group(2)}",
                "demo_type": "in_person" if _IN_PERSON.search(utterance) else "virtual",
            })

        if len(entities.skus) >= 2 and _COMPARE.search(utterance) and "compare_products" in offered:
            return _call("compare_products", {"product_ids": entities.skus[:5]})

        if _CLEAR_CART.search(utterance) and "clear_cart" in offered:
            return _call("clear_cart", {"confirm": True} if _CONFIRM.search(utterance) else {})

        if _VIEW_CART.search(utterance) and "view_cart" in offered:
            return _call("view_cart", {})

        if sku and _REMOVE.search(utterance) and "update_cart_item" in offered:
            return _call("update_cart_item", {"product_id": sku, "quantity": 0})

        set_quantity = _SET_QUANTITY.search(utterance)
        if sku and set_quantity and "update_cart_item" in offered:
            return _call("update_cart_item", {"product_id": sku, "quantity": int(set_quantity.group(2))})

        if sku and _ADD_TO_CART.search(utterance) and "add_to_cart" in offered:
            leading = _LEADING_NUMBER.search(utterance)
            amount = quantity or (int(leading.group(1)) if leading else 1)
            return _call("add_to_cart", {"product_id": sku, "quantity": amount})

        if sku and _AVAILABILITY.search(utterance) and "check_inventory" in offered:
            return _call("check_inventory", {"product_ids": entities.skus})

        if sku and _PRICE.search(utterance) and "get_pricing" in offered:
            return _call("get_pricing", {"product_ids": entities.skus})

        if (entities.categories or _SEARCH.search(utterance)) and "search_products" in offered:
            return _call("search_products", self._search_args(utterance, entities))

        return None

    @staticmethod
    def _tax_exemption(utterance: str) -> Optional[ToolCall]:
        certificate = _CERTIFICATE.search(utterance)
        if certificate is None:
            return None
        state = _STATE.search(utterance)
        code = state.group(1) if state else certificate.group(1)[:2]
        if code == "MS":
            return None
        args = {"certificate": certificate.group(1), "state": code}
        expires = _DATE.search(utterance)
        if expires:
            args["expiration_date"] = expires.group(1)
        return _call("apply_tax_exemption", args)

    @staticmethod
    def _search_args(utterance: str, entities: Any) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if entities.price_max is not None:
            filters["maxPrice"] = entities.price_max
        if entities.price_min is not None:
            filters["minPrice"] = entities.price_min
        if entities.categories:
            filters["category"] = entities.categories[0]
        if entities.brands:
            filters["brand"] = entities.brands[0]

        if entities.categories:
            query = entities.categories[0]
        else:
            words = [w for w in re.findall(r"[a-z0-9]+", utterance.lower()) if w not in _STOPWORDS and not w.isdigit()]
            query = " ".join(words[:5]) or utterance.strip()[:200]

        args: Dict[str, Any] = {"query": query}
        if filters:
            args["filters"] = filters
        return args
