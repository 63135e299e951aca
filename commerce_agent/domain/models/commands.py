"""
State commands and the reducer that applies them.

A command is pure data describing one atomic effect on a ConversationState.
``apply_command`` never mutates its input; it returns a new state. Every
command type except APPEND_MESSAGE is idempotent: setters by construction,
counters and ring buffers by de-duplicating on the command id.
"""

from typing import Dict, Any, List, Optional, Literal, Union, Annotated, Callable
from pydantic import BaseModel, Field, TypeAdapter
import hashlib
import json
import uuid

from commerce_agent.domain.errors import ErrorInfo
from commerce_agent.domain.models.conversation_state import (
    ConversationState, ConversationMessage, CartItem, Mode, ThreatLevel,
    ValidationRecord, VALIDATION_HISTORY_LIMIT, NODE_DURATION_SAMPLES, METRIC_ID_MEMORY,
)


def _new_id() -> str:
    return uuid.uuid4().hex


class BaseCommand(BaseModel):
    command_id: str = Field(default_factory=_new_id)


class SetMode(BaseCommand):
    type: Literal["SET_MODE"] = "SET_MODE"
    mode: Mode


class MergeCart(BaseCommand):
    """Merge line items by (product_id, variant_id); quantity is absolute, 0 removes"""
    type: Literal["MERGE_CART"] = "MERGE_CART"
    items: List[CartItem] = Field(default_factory=list)
    cart_id: Optional[str] = None
    currency: Optional[str] = None


class AppendMessage(BaseCommand):
    type: Literal["APPEND_MESSAGE"] = "APPEND_MESSAGE"
    message: ConversationMessage


class TruncateMessages(BaseCommand):
    type: Literal["TRUNCATE_MESSAGES"] = "TRUNCATE_MESSAGES"
    keep_last: int = Field(ge=0)


class RecordMetric(BaseCommand):
    type: Literal["RECORD_METRIC"] = "RECORD_METRIC"
    name: Literal["node_duration", "cache_hit", "cache_miss", "tool_execution", "error", "degraded"]
    value: float = 1.0
    label: Optional[str] = None


class RecordValidation(BaseCommand):
    type: Literal["RECORD_VALIDATION"] = "RECORD_VALIDATION"
    record: ValidationRecord


class SetRateLimit(BaseCommand):
    type: Literal["SET_RATE_LIMIT"] = "SET_RATE_LIMIT"
    tokens_remaining: float


class SetError(BaseCommand):
    type: Literal["SET_ERROR"] = "SET_ERROR"
    error: Optional[ErrorInfo] = None


class SetLastAction(BaseCommand):
    type: Literal["SET_LAST_ACTION"] = "SET_LAST_ACTION"
    action: Optional[str] = None


class SetAvailableActions(BaseCommand):
    type: Literal["SET_AVAILABLE_ACTIONS"] = "SET_AVAILABLE_ACTIONS"
    actions: List[str] = Field(default_factory=list)


class MergeContext(BaseCommand):
    type: Literal["MERGE_CONTEXT"] = "MERGE_CONTEXT"
    values: Dict[str, Any] = Field(default_factory=dict)


class PresentProducts(BaseCommand):
    type: Literal["PRESENT_PRODUCTS"] = "PRESENT_PRODUCTS"
    products: List[Dict[str, Any]] = Field(default_factory=list)
    query: Optional[str] = None


Command = Annotated[
    Union[
        SetMode, MergeCart, AppendMessage, TruncateMessages, RecordMetric,
        RecordValidation, SetRateLimit, SetError, SetLastAction,
        SetAvailableActions, MergeContext, PresentProducts,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter = TypeAdapter(Command)


def parse_command(data: Dict[str, Any]) -> BaseCommand:
    """Rebuild a command from its serialized form"""
    return command_adapter.validate_python(data)


def cart_version(items: List[CartItem]) -> str:
    """Deterministic digest of cart contents"""
    canonical = sorted(
        (item.line_key, item.quantity, item.unit_price) for item in items
    )
    return hashlib.sha256(json.dumps(canonical).encode()).hexdigest()[:12]


def threat_level_for(history: List[ValidationRecord]) -> ThreatLevel:
    """Threat level from the last ten verdicts"""
    failures = len([record for record in history[-10:] if not record.safe])
    if failures == 0:
        return ThreatLevel.NONE
    if failures <= 2:
        return ThreatLevel.LOW
    if failures <= 5:
        return ThreatLevel.MEDIUM
    if failures <= 8:
        return ThreatLevel.HIGH
    return ThreatLevel.CRITICAL


def _set_mode(state: ConversationState, command: SetMode) -> ConversationState:
    return state.model_copy(update={"mode": command.mode})


def _merge_cart(state: ConversationState, command: MergeCart) -> ConversationState:
    lines = {item.line_key: item for item in state.cart.items}
    for item in command.items:
        if item.quantity == 0:
            lines.pop(item.line_key, None)
            continue
        existing = lines.get(item.line_key)
        if existing is not None:
            # Keep known price/name when the update omits them
            item = item.model_copy(update={
                "unit_price": item.unit_price if item.unit_price is not None else existing.unit_price,
                "name": item.name or existing.name,
            })
        lines[item.line_key] = item
    items = list(lines.values())
    cart = state.cart.model_copy(update={
        "items": items,
        "cart_id": command.cart_id or state.cart.cart_id,
        "currency": command.currency or state.cart.currency,
        "totals_cache_version": cart_version(items),
    })
    return state.model_copy(update={"cart": cart})


def _append_message(state: ConversationState, command: AppendMessage) -> ConversationState:
    return state.model_copy(update={"messages": [*state.messages, command.message]})


def _truncate_messages(state: ConversationState, command: TruncateMessages) -> ConversationState:
    if len(state.messages) <= command.keep_last:
        return state
    kept = state.messages[-command.keep_last:] if command.keep_last else []
    return state.model_copy(update={"messages": kept})


def _record_metric(state: ConversationState, command: RecordMetric) -> ConversationState:
    perf = state.performance
    if command.command_id in perf.recorded_metric_ids:
        return state

    update: Dict[str, Any] = {
        "recorded_metric_ids": [*perf.recorded_metric_ids, command.command_id][-METRIC_ID_MEMORY:]
    }
    if command.name == "node_duration":
        durations = dict(perf.per_node_durations_ms)
        label = command.label or "unknown"
        durations[label] = [*durations.get(label, []), command.value][-NODE_DURATION_SAMPLES:]
        update["per_node_durations_ms"] = durations
    elif command.name == "cache_hit":
        update["cache_hits"] = perf.cache_hits + int(command.value)
    elif command.name == "cache_miss":
        update["cache_misses"] = perf.cache_misses + int(command.value)
    elif command.name == "tool_execution":
        update["tool_executions"] = perf.tool_executions + int(command.value)
    elif command.name == "error":
        errors = dict(perf.errors)
        label = command.label or "unknown"
        errors[label] = errors.get(label, 0) + int(command.value)
        update["errors"] = errors
    elif command.name == "degraded":
        if command.label and command.label not in perf.degraded_fields:
            update["degraded_fields"] = [*perf.degraded_fields, command.label]

    return state.model_copy(update={"performance": perf.model_copy(update=update)})


def _record_validation(state: ConversationState, command: RecordValidation) -> ConversationState:
    security = state.security
    if any(record.record_id == command.record.record_id for record in security.validation_history):
        return state
    history = [*security.validation_history, command.record][-VALIDATION_HISTORY_LIMIT:]
    updated = security.model_copy(update={
        "validation_history": history,
        "threat_level": threat_level_for(history),
        "blocked_attempts": security.blocked_attempts + (0 if command.record.safe else 1),
        "last_violation_at": security.last_violation_at if command.record.safe else command.record.timestamp,
    })
    return state.model_copy(update={"security": updated})


def _set_rate_limit(state: ConversationState, command: SetRateLimit) -> ConversationState:
    security = state.security.model_copy(update={"rate_limit_tokens_remaining": command.tokens_remaining})
    return state.model_copy(update={"security": security})


def _set_error(state: ConversationState, command: SetError) -> ConversationState:
    return state.model_copy(update={"last_error": command.error})


def _set_last_action(state: ConversationState, command: SetLastAction) -> ConversationState:
    return state.model_copy(update={"last_action": command.action})


def _set_available_actions(state: ConversationState, command: SetAvailableActions) -> ConversationState:
    return state.model_copy(update={"available_actions": list(command.actions)})


def _merge_context(state: ConversationState, command: MergeContext) -> ConversationState:
    known = set(type(state.context).model_fields)
    values = {key: value for key, value in command.values.items() if key in known}
    return state.model_copy(update={"context": state.context.model_copy(update=values)})


def _present_products(state: ConversationState, command: PresentProducts) -> ConversationState:
    return state.model_copy(update={"presented_products": list(command.products)})


_REDUCERS: Dict[str, Callable[[ConversationState, Any], ConversationState]] = {
    "SET_MODE": _set_mode,
    "MERGE_CART": _merge_cart,
    "APPEND_MESSAGE": _append_message,
    "TRUNCATE_MESSAGES": _truncate_messages,
    "RECORD_METRIC": _record_metric,
    "RECORD_VALIDATION": _record_validation,
    "SET_RATE_LIMIT": _set_rate_limit,
    "SET_ERROR": _set_error,
    "SET_LAST_ACTION": _set_last_action,
    "SET_AVAILABLE_ACTIONS": _set_available_actions,
    "MERGE_CONTEXT": _merge_context,
    "PRESENT_PRODUCTS": _present_products,
}


def apply_command(state: ConversationState, command: BaseCommand) -> ConversationState:
    """Apply one command and return the resulting state"""
    reducer = _REDUCERS.get(getattr(command, "type", None))
    if reducer is None:
        raise ValueError(f"Unknown command type: {getattr(command, 'type', command)!r}")
    return reducer(state, command)


def apply_commands(state: ConversationState, commands: List[BaseCommand]) -> ConversationState:
    """Apply commands in order"""
    for command in commands:
        state = apply_command(state, command)
    return state


# Convenience constructors used by graph nodes and actions

def metric(name: str, value: float = 1.0, label: Optional[str] = None) -> RecordMetric:
    return RecordMetric(name=name, value=value, label=label)


def message(role: str, content: str, **kwargs: Any) -> AppendMessage:
    return AppendMessage(message=ConversationMessage(role=role, content=content, **kwargs))
