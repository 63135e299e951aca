from typing import List, Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

from commerce_agent.domain.models.action import Capability


ALL_CAPABILITIES = [c.value for c in Capability]


class AssistantSettings(BaseModel):
    """Runtime configuration for the commerce assistant"""

    # Turn budgets by tier
    standard_budget_ms: int = Field(default=250, gt=0)
    b2b_budget_ms: int = Field(default=1000, gt=0)
    bulk_budget_ms: int = Field(default=5000, gt=0)
    dependency_timeout_ms: int = Field(default=150, gt=0)
    retry_backoff_ms: int = Field(default=50, ge=0)
    model_timeout_ms: int = Field(default=200, gt=0)
    max_hops: int = Field(default=5, ge=1)

    # Cache
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_default_ttl_seconds: float = Field(default=300, gt=0)
    cache_l2_timeout_ms: int = Field(default=50, gt=0)

    # Rate limiting (token bucket per session)
    rate_limit_capacity: float = Field(default=20, gt=0)
    rate_limit_refill_per_second: float = Field(default=0.5, gt=0)
    b2b_rate_limit_capacity: float = Field(default=60, gt=0)

    # Seconds a session stays escalated after its last failed validation
    escalation_cooldown_seconds: float = Field(default=300, ge=0)

    # Conversation window
    model_window_messages: int = Field(default=20, ge=1)
    history_limit_messages: int = Field(default=100, ge=1)

    capabilities: List[str] = Field(default_factory=lambda: list(ALL_CAPABILITIES))
    action_document_path: Optional[str] = None
    semantic_threshold: float = Field(default=0.6, ge=0, le=1)

    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "commerce-assistant"

    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: Optional[str] = None


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings() -> AssistantSettings:
    """Load configuration from the environment (and .env when present)"""

    load_dotenv()
    env = {
        "standard_budget_ms": os.getenv("ASSISTANT_STANDARD_BUDGET_MS"),
        "b2b_budget_ms": os.getenv("ASSISTANT_B2B_BUDGET_MS"),
        "bulk_budget_ms": os.getenv("ASSISTANT_BULK_BUDGET_MS"),
        "dependency_timeout_ms": os.getenv("ASSISTANT_DEPENDENCY_TIMEOUT_MS"),
        "retry_backoff_ms": os.getenv("ASSISTANT_RETRY_BACKOFF_MS"),
        "model_timeout_ms": os.getenv("ASSISTANT_MODEL_TIMEOUT_MS"),
        "max_hops": os.getenv("ASSISTANT_MAX_HOPS"),
        "cache_max_entries": os.getenv("ASSISTANT_CACHE_MAX_ENTRIES"),
        "cache_default_ttl_seconds": os.getenv("ASSISTANT_CACHE_TTL_SECONDS"),
        "cache_l2_timeout_ms": os.getenv("ASSISTANT_CACHE_L2_TIMEOUT_MS"),
        "rate_limit_capacity": os.getenv("ASSISTANT_RATE_LIMIT_CAPACITY"),
        "rate_limit_refill_per_second": os.getenv("ASSISTANT_RATE_LIMIT_REFILL_PER_SECOND"),
        "b2b_rate_limit_capacity": os.getenv("ASSISTANT_B2B_RATE_LIMIT_CAPACITY"),
        "escalation_cooldown_seconds": os.getenv("ASSISTANT_ESCALATION_COOLDOWN_SECONDS"),
        "model_window_messages": os.getenv("ASSISTANT_MODEL_WINDOW_MESSAGES"),
        "history_limit_messages": os.getenv("ASSISTANT_HISTORY_LIMIT_MESSAGES"),
        "capabilities": _csv(os.getenv("ASSISTANT_CAPABILITIES")),
        "action_document_path": os.getenv("ASSISTANT_ACTION_DOCUMENT"),
        "semantic_threshold": os.getenv("ASSISTANT_SEMANTIC_THRESHOLD"),
        "log_level": os.getenv("LOG_LEVEL"),
        "log_format": os.getenv("LOG_FORMAT"),
        "service_name": os.getenv("SERVICE_NAME"),
        "langfuse_public_key": os.getenv("LANGFUSE_PUBLIC_KEY"),
        "langfuse_secret_key": os.getenv("LANGFUSE_SECRET_KEY"),
        "langfuse_host": os.getenv("LANGFUSE_HOST"),
    }
    # Unset variables fall back to model defaults; pydantic coerces the strings
    return AssistantSettings(**{key: value for key, value in env.items() if value is not None})
