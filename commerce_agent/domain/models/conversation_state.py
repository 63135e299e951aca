from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from commerce_agent.domain.errors import ErrorInfo


VALIDATION_HISTORY_LIMIT = 100
NODE_DURATION_SAMPLES = 50
METRIC_ID_MEMORY = 1000


class Mode(str, Enum):
    """Shopping mode of a conversation"""
    B2C = "b2c"
    B2B = "b2b"
    UNKNOWN = "unknown"


class ThreatLevel(str, Enum):
    """Session threat level derived from recent verdicts"""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ToolCall(BaseModel):
    """Structured tool invocation requested by the model"""
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ConversationMessage(BaseModel):
    """One turn entry in the conversation history"""
    role: str = Field(description="user, assistant, tool or system")
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CartItem(BaseModel):
    """Cart line item"""
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(ge=0)
    unit_price: Optional[float] = None
    name: Optional[str] = None

    @property
    def line_key(self) -> str:
        return f"{self.product_id}::{self.variant_id or ''}"


class CartSnapshot(BaseModel):
    """Cart as last seen by the assistant"""
    cart_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    currency: str = "USD"
    totals_cache_version: str = ""

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> float:
        return round(sum((item.unit_price or 0.0) * item.quantity for item in self.items), 2)


class ValidationRecord(BaseModel):
    """Audit entry for one security verdict"""
    record_id: str
    direction: str
    safe: bool
    policy: Optional[str] = None
    category: Optional[str] = None
    severity: str = "low"
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SecurityTelemetry(BaseModel):
    """Security state of a session"""
    threat_level: ThreatLevel = ThreatLevel.NONE
    validation_history: List[ValidationRecord] = Field(default_factory=list)
    rate_limit_tokens_remaining: Optional[float] = None
    blocked_attempts: int = 0
    last_violation_at: Optional[datetime] = None


class PerformanceTelemetry(BaseModel):
    """Per-session performance counters"""
    per_node_durations_ms: Dict[str, List[float]] = Field(default_factory=dict)
    cache_hits: int = 0
    cache_misses: int = 0
    tool_executions: int = 0
    errors: Dict[str, int] = Field(default_factory=dict)
    degraded_fields: List[str] = Field(default_factory=list)
    recorded_metric_ids: List[str] = Field(default_factory=list)

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total else 0.0


class CommerceContext(BaseModel):
    """Commerce context carried across turns"""
    locale: str = "en-US"
    currency: str = "USD"
    customer_id: Optional[str] = None
    customer_tier: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    last_search: Optional[Dict[str, Any]] = None
    detected_intent: Optional[str] = None
    tax_exempt: bool = False


class ConversationState(BaseModel):
    """Single source of truth for a conversation"""
    session_id: str = ""
    messages: List[ConversationMessage] = Field(default_factory=list)
    mode: Mode = Mode.B2C
    cart: CartSnapshot = Field(default_factory=CartSnapshot)
    security: SecurityTelemetry = Field(default_factory=SecurityTelemetry)
    performance: PerformanceTelemetry = Field(default_factory=PerformanceTelemetry)
    context: CommerceContext = Field(default_factory=CommerceContext)
    available_actions: List[str] = Field(default_factory=list)
    presented_products: List[Dict[str, Any]] = Field(default_factory=list)
    last_action: Optional[str] = None
    last_error: Optional[ErrorInfo] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def effective_mode(self) -> Mode:
        return Mode.B2C if self.mode == Mode.UNKNOWN else self.mode

    @property
    def cart_identity(self) -> str:
        return self.cart.cart_id or self.session_id

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "messages": len(self.messages),
            "cart_items": len(self.cart.items),
            "threat_level": self.security.threat_level.value,
            "last_action": self.last_action,
            "last_error": self.last_error.error_type if self.last_error else None,
            "cache_hit_rate": round(self.performance.cache_hit_rate, 3),
        }
