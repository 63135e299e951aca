from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime


USER_MESSAGES: Dict[str, str] = {
    "ValidationError": "I didn't quite understand that request. Could you rephrase it?",
    "ActionNotFound": "I can't do that here, but I can help you search, compare and manage your cart.",
    "SecurityViolation": "I can help you find products, check prices or manage your cart. What are you shopping for today?",
    "TransientDependencyError": "I'm having trouble right now, please try again in a moment.",
    "PermanentDependencyError": "I couldn't find that product. Could you double-check the name or SKU?",
    "CapabilityUnavailable": "That option isn't available in this store right now.",
    "DeadlineExceeded": "This is taking longer than expected. Please try again in a moment.",
    "InternalError": "Something went wrong on my side. Please try again.",
}


class AssistantError(Exception):
    """Base error for the commerce assistant"""

    retryable: bool = False

    def __init__(self, message: str, user_message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self._user_message = user_message

    @property
    def error_type(self) -> str:
        return type(self).__name__

    @property
    def user_message(self) -> str:
        if self._user_message:
            return self._user_message
        for cls in type(self).__mro__:
            if cls.__name__ in USER_MESSAGES:
                return USER_MESSAGES[cls.__name__]
        return USER_MESSAGES["InternalError"]

    def to_info(self, node: Optional[str] = None) -> "ErrorInfo":
        return ErrorInfo(
            error_type=self.error_type,
            message=self.message,
            retryable=self.retryable,
            user_message=self.user_message,
            node=node,
        )


class ValidationError(AssistantError):
    """Bad input shape; the user must correct it"""


class ActionNotFound(ValidationError):
    """Requested action is not in the registry"""


class SecurityViolation(AssistantError):
    """Blocked by the security judge"""


class TransientDependencyError(AssistantError):
    """Timeout or 5xx from a collaborator; safe to retry"""

    retryable = True


class PermanentDependencyError(AssistantError):
    """Collaborator rejected the request (e.g. unknown product)"""


class CapabilityUnavailable(AssistantError):
    """An action needs a capability this environment lacks"""


class DeadlineExceeded(AssistantError):
    """Turn budget exhausted"""


class RegistrationError(AssistantError):
    """Action definition could not be registered"""


class ConfigurationError(AssistantError):
    """Action document could not be read at all"""


class ErrorInfo(BaseModel):
    """Serializable error record kept on the conversation state"""
    error_type: str
    message: str
    retryable: bool = False
    user_message: str
    node: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionError(BaseModel):
    """Tagged failure of an action invocation"""
    kind: Literal["transient", "permanent"]
    error_type: str
    message: str
    user_message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ExecutionError":
        if isinstance(exc, AssistantError):
            return cls(
                kind="transient" if exc.retryable else "permanent",
                error_type=exc.error_type,
                message=exc.message,
                user_message=exc.user_message,
            )
        return cls(
            kind="permanent",
            error_type="InternalError",
            message=str(exc) or type(exc).__name__,
            user_message=USER_MESSAGES["InternalError"],
        )

    def to_info(self, node: Optional[str] = None) -> ErrorInfo:
        return ErrorInfo(
            error_type=self.error_type,
            message=self.message,
            retryable=self.kind == "transient",
            user_message=self.user_message,
            node=node,
        )
