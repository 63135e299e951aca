from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import json

from commerce_agent.domain.errors import ErrorInfo
from commerce_agent.domain.models.conversation_state import Mode


class EventType(str, Enum):
    """Streamed turn event types"""
    METADATA = "metadata"
    CONTENT_CHUNK = "content-chunk"
    ACTION_RESULT = "action-result"
    ERROR = "error"
    DONE = "done"


class AssistantEvent(BaseModel):
    """Base event model for everything streamed during a turn"""
    type: EventType
    turn_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_sse(self) -> str:
        payload = json.dumps(self.model_dump(mode="json"), separators=(",", ":"))
        return f"event: {self.type.value}\ndata: {payload}\n\n"


class MetadataEvent(AssistantEvent):
    type: Literal[EventType.METADATA] = EventType.METADATA


class ContentChunkEvent(AssistantEvent):
    type: Literal[EventType.CONTENT_CHUNK] = EventType.CONTENT_CHUNK


class ActionResultEvent(AssistantEvent):
    type: Literal[EventType.ACTION_RESULT] = EventType.ACTION_RESULT


class ErrorEvent(AssistantEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR


class DoneEvent(AssistantEvent):
    type: Literal[EventType.DONE] = EventType.DONE


class ChatRequest(BaseModel):
    """Chat endpoint request body"""
    message: str = Field(max_length=20000)
    session_id: str = Field(min_length=1, max_length=128)
    mode: Optional[Mode] = None
    stream: bool = False
    client_id: Optional[str] = None
    customer_id: Optional[str] = Field(default=None, max_length=128)


class ActionSummary(BaseModel):
    name: str
    success: bool
    cached: bool = False
    error_type: Optional[str] = None
    data: Any = None


class TurnResponse(BaseModel):
    """Complete (non-streamed) result of a turn"""
    session_id: str
    turn_id: str
    message: str
    mode: Mode
    actions: List[ActionSummary] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    commands: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: float = 0.0
    retry_after_seconds: Optional[float] = None
