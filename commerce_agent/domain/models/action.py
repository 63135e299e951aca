from typing import Dict, Any, List, Optional, Callable
from pydantic import BaseModel, Field, ConfigDict
from enum import Enum

from commerce_agent.domain.errors import ExecutionError
from commerce_agent.domain.models.commands import Command
from commerce_agent.domain.models.conversation_state import ConversationState, Mode


class Capability(str, Enum):
    """Environment capabilities an action may depend on"""
    UNIFIED_DATA_ACCESS = "UNIFIED_DATA_ACCESS"
    CART_MUTATION = "CART_MUTATION"
    BULK_PRICING_EXTENSION = "BULK_PRICING_EXTENSION"
    ACCOUNT_CONTEXT_EXTENSION = "ACCOUNT_CONTEXT_EXTENSION"


class CachePolicy(BaseModel):
    """How an action's results are cached"""
    model_config = ConfigDict(frozen=True)

    ttl_seconds: float = 300
    key_fn: Optional[Callable[[Dict[str, Any], str], str]] = None
    tags_fn: Optional[Callable[[Dict[str, Any], "ActionContext"], List[str]]] = None


class ActionContext(BaseModel):
    """Everything an action executor may touch, passed explicitly"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    mode: Mode
    state: ConversationState
    data_access: Any
    permissions: List[str] = Field(default_factory=list)
    dependency_timeout_ms: int = 150
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ActionResult(BaseModel):
    """Outcome of an action invocation"""
    action: str
    success: bool = True
    data: Any = None
    message: Optional[str] = None
    commands: List[Command] = Field(default_factory=list)
    error: Optional[ExecutionError] = None
    cached: bool = False
    duration_ms: float = 0.0

    @classmethod
    def failure(cls, action: str, error: ExecutionError, duration_ms: float = 0.0) -> "ActionResult":
        return cls(action=action, success=False, error=error, duration_ms=duration_ms)


class ActionDefinition(BaseModel):
    """Declarative, immutable description of an invocable commerce action"""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameter_schema: Dict[str, Any]
    execute: Callable[..., Any]
    required_capabilities: List[Capability] = Field(default_factory=list)
    modes: List[Mode] = Field(default_factory=lambda: [Mode.B2C, Mode.B2B])
    permissions: List[str] = Field(default_factory=list)
    category: str = "general"
    pre_process: Optional[Callable[..., Any]] = None
    post_process: Optional[Callable[..., Any]] = None
    cache_policy: Optional[CachePolicy] = None
    timeout_ms: Optional[int] = None

    def applies_to(self, mode: Mode) -> bool:
        return mode in self.modes


class ToolSpec(BaseModel):
    """Tool menu entry offered to the model"""
    name: str
    description: str
    parameters: Dict[str, Any]


CachePolicy.model_rebuild()
