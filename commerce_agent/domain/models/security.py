from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field
from enum import Enum
import uuid

from commerce_agent.domain.models.conversation_state import Mode, ThreatLevel, ValidationRecord


class Direction(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    ACTION = "action"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityContext(BaseModel):
    """What the judge knows about the caller"""
    session_id: str
    client_id: Optional[str] = None
    mode: Optional[Mode] = None
    permissions: List[str] = Field(default_factory=list)
    threat_level: ThreatLevel = ThreatLevel.NONE
    last_violation_at: Optional[datetime] = None

    @property
    def bucket_key(self) -> str:
        return self.client_id or self.session_id


class SecurityVerdict(BaseModel):
    """Outcome of one judge validation"""
    safe: bool
    direction: Direction
    reason: Optional[str] = None
    sanitized_input: Optional[str] = None
    fallback_message: Optional[str] = None
    policy: Optional[str] = None
    category: Optional[str] = None
    severity: Severity = Severity.LOW
    retry_after_seconds: Optional[float] = None
    rate_limit_remaining: Optional[float] = None
    flags: List[str] = Field(default_factory=list)
    verdict_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    def to_record(self) -> ValidationRecord:
        return ValidationRecord(
            record_id=self.verdict_id,
            direction=self.direction.value,
            safe=self.safe,
            policy=self.policy,
            category=self.category,
            severity=self.severity.value,
            reason=self.reason,
        )
