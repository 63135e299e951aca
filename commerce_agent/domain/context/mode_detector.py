from typing import Dict, Any, List, Optional, Tuple
from pydantic import BaseModel, Field
import asyncio
import re
import structlog

from commerce_agent.domain.models.conversation_state import ConversationState, Mode

logger = structlog.get_logger(__name__)


UNIT_QUANTITY = re.compile(
    r"(?<![$\d.,])\b(\d{1,3}(?:,\d{3})+|\d+)\s*(units?|pieces?|pcs|boxes?|cases?|pallets?|dozen|gross|seats?|licenses?)\b",
    re.I,
)

# (indicator, pattern, weight)
B2B_SIGNALS: List[Tuple[str, re.Pattern, int]] = [
    ("business_terms", re.compile(
        r"\b(company|business|organization|corporate|enterprise|procurement|purchase\s+order|po\s*#?\d*|quote|rfq|"
        r"invoice|net\s*\d+|vendor|supplier|reseller|distributor|our\s+(office|team|staff|employees))\b", re.I), 2),
    ("bulk_pricing", re.compile(
        r"\b(bulk|wholesale|volume\s+(pricing|discount)|tier(ed)?\s+pricing|quantity\s+(discount|break))\b", re.I), 3),
    ("business_account", re.compile(
        r"\b((business|corporate|trade|wholesale)\s+account|dealer|b2b)\b", re.I), 3),
    ("logistics", re.compile(
        r"\b(freight|pallet\s+shipping|ltl|full\s+truck(load)?|loading\s+dock|commercial\s+address)\b", re.I), 2),
    ("csv_upload", re.compile(r"\b(csv|spreadsheet|upload\s+(a\s+|my\s+|our\s+)?(file|list|order))\b", re.I), 2),
    ("tax_exempt", re.compile(r"\b(tax[\s-]?exempt(ion)?|resale\s+certificate|ein|vat\s+number)\b", re.I), 2),
]

B2C_SIGNALS: List[Tuple[str, re.Pattern, int]] = [
    ("personal_language", re.compile(r"\b(my|me|i|personal|home|family|gift|present|birthday)\b", re.I), 2),
    ("small_quantity", re.compile(r"\b(one|single|couple|few|a\s+pair)\b", re.I), 1),
    ("consumer_shipping", re.compile(r"\b(home\s+delivery|residential|apartment|free\s+shipping)\b", re.I), 1),
    ("consumer_payment", re.compile(r"\b(credit\s+card|paypal|afterpay|klarna|apple\s+pay|gift\s+card)\b", re.I), 1),
]

LARGE_QUANTITY = 100
BULK_CART_UNITS = 50
HIGH_ORDER_VOLUME = 500
FLIP_MIN_SCORE = 3
FLIP_MIN_LEAD = 2


class ModeDetection(BaseModel):
    """Scored mode decision with the signals behind it"""
    mode: Mode
    previous_mode: Mode
    b2b_score: int = 0
    b2c_score: int = 0
    indicators: List[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.mode != self.previous_mode


class ModeDetector:
    """Sticky B2C/B2B classification of a conversation"""

    def analyze(self, state: ConversationState, utterance: str, order_volume: Optional[int] = None) -> ModeDetection:
        previous = state.mode if state.mode != Mode.UNKNOWN else Mode.B2C
        indicators: List[str] = []
        b2b = 0
        b2c = 0

        quantities = [int(m.group(1).replace(",", "")) for m in UNIT_QUANTITY.finditer(utterance)]
        if quantities:
            b2b += 2
            indicators.append("quantity_with_units")
            if max(quantities) >= LARGE_QUANTITY:
                b2b += 3
                indicators.append("large_quantity")

        for name, pattern, weight in B2B_SIGNALS:
            if pattern.search(utterance):
                b2b += weight
                indicators.append(name)

        for name, pattern, weight in B2C_SIGNALS:
            if pattern.search(utterance):
                b2c += weight
                indicators.append(name)

        if state.mode == Mode.B2B:
            b2b += 1
            indicators.append("previous_b2b")
        elif state.mode == Mode.B2C:
            b2c += 1
            indicators.append("previous_b2c")

        if state.cart.total_quantity >= BULK_CART_UNITS:
            b2b += 2
            indicators.append("bulk_cart")

        if order_volume is not None and order_volume >= HIGH_ORDER_VOLUME:
            b2b += 2
            indicators.append("order_volume")

        scores = {Mode.B2B: b2b, Mode.B2C: b2c}
        challenger = Mode.B2C if previous == Mode.B2B else Mode.B2B
        mode = previous
        if scores[challenger] >= FLIP_MIN_SCORE and scores[challenger] - scores[previous] >= FLIP_MIN_LEAD:
            mode = challenger

        return ModeDetection(mode=mode, previous_mode=previous, b2b_score=b2b, b2c_score=b2c, indicators=indicators)

    def detect_mode(self, state: ConversationState, utterance: str, order_volume: Optional[int] = None) -> Mode:
        return self.analyze(state, utterance, order_volume).mode

    @staticmethod
    async def fetch_order_volume(data_access: Any, customer_id: Optional[str], timeout_ms: int = 150) -> Optional[int]:
        """Historical order volume for known customers; None when unavailable"""

        if not customer_id:
            return None
        try:
            result: Dict[str, Any] = await asyncio.wait_for(
                data_access.custom_extension("getOrderVolume", {"customer_id": customer_id}),
                timeout=timeout_ms / 1000,
            )
        except Exception as e:
            logger.warning("Order volume unavailable", customer_id=customer_id, error=str(e) or type(e).__name__)
            return None
        return result.get("units_last_90_days")
