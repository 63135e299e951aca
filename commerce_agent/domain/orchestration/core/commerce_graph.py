"""
LangGraph workflow for one assistant turn.

    validate_input -> detect_mode -> enrich_context -> select_action
        -> (execute_tool -> validate_output)* -> format_response -> END

Any node failure routes to error_recovery, which also ends the turn. Nodes
never touch the conversation directly: they return command lists which the
``conversation`` channel reducer applies before the next node runs. The same
commands are collected on ``turn_commands`` so the executor can commit them
to the state store once the turn is over.
"""

from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal, Callable, Awaitable
from langgraph.graph import StateGraph, END
import asyncio
import json
import operator
import time
import structlog

from commerce_agent.domain.actions.cart import cart_tag
from commerce_agent.domain.cache.cache_layer import TieredCache
from commerce_agent.domain.context.context_enricher import ContextEnricher, EnrichedContext
from commerce_agent.domain.context.context_window import ContextWindow
from commerce_agent.domain.context.mode_detector import ModeDetector, ModeDetection
from commerce_agent.domain.errors import (
    AssistantError, ErrorInfo, ExecutionError, SecurityViolation, TransientDependencyError, ValidationError,
    USER_MESSAGES,
)
from commerce_agent.domain.models.action import ActionContext, ActionResult, ToolSpec
from commerce_agent.domain.models.commands import (
    BaseCommand, MergeCart, MergeContext, SetError, SetLastAction, SetMode, SetAvailableActions,
    apply_commands, message, metric,
)
from commerce_agent.domain.models.conversation_state import ConversationState, Mode, ToolCall
from commerce_agent.domain.models.security import SecurityContext
from commerce_agent.domain.security.judge import SecurityJudge, GENERIC_FALLBACK
from commerce_agent.domain.security.patterns import quantities_in
from commerce_agent.domain.tool.tool_registry import ActionRegistry
from commerce_agent.infrastructure.llm.model_provider import ModelProvider, ModelResponse, gather_stream
from commerce_agent.infrastructure.observability.logging import assistant_logger

logger = structlog.get_logger(__name__)


PARTIAL_RESULT_MESSAGE = (
    "I've done part of that for you. Tell me if you'd like me to continue with the rest."
)
BULK_QUANTITY = 1000
BULK_INDICATORS = {"bulk_pricing", "csv_upload"}

BudgetTier = Literal["standard", "b2b", "bulk"]


def reduce_conversation(current: Optional[ConversationState], update: Any) -> ConversationState:
    """Channel reducer: a state replaces, a command list is applied"""

    if isinstance(update, ConversationState):
        return update
    return apply_commands(current if current is not None else ConversationState(), update or [])


class TurnState(TypedDict, total=False):
    """State flowing through the turn graph"""
    conversation: Annotated[ConversationState, reduce_conversation]
    turn_commands: Annotated[List[BaseCommand], operator.add]
    turn_id: str
    utterance: str
    requested_mode: Optional[Mode]
    client_id: Optional[str]
    customer_id: Optional[str]
    blocked: bool
    fallback_message: Optional[str]
    retry_after_seconds: Optional[float]
    sanitized_input: Optional[str]
    detection: Optional[ModeDetection]
    budget_tier: BudgetTier
    enriched: Optional[EnrichedContext]
    draft: Optional[str]
    draft_chunks: List[str]
    pending_calls: List[ToolCall]
    hops: int
    results: Annotated[List[ActionResult], operator.add]
    replies: Annotated[List[str], operator.add]
    truncated: bool
    failure: Optional[ErrorInfo]
    response: Optional[str]
    chunks: List[str]
    last_node: str
    node_duration_ms: float


def recovery_commands(error: ErrorInfo) -> List[BaseCommand]:
    """Commands recording a failed turn and its degraded reply"""
    return [
        SetError(error=error),
        metric("error", label=error.error_type),
        message("assistant", error.user_message, metadata={"degraded": True, "error_type": error.error_type}),
    ]


def budget_tier(mode: Mode, utterance: str, detection: Optional[ModeDetection] = None) -> BudgetTier:
    """Turn budget tier for the detected mode and request size"""

    indicators = set(detection.indicators) if detection else set()
    if indicators & BULK_INDICATORS or any(q >= BULK_QUANTITY for q in quantities_in(utterance)):
        return "bulk"
    if mode == Mode.B2B:
        return "b2b"
    return "standard"


class CommerceGraph:
    """Builds and runs the turn workflow graph"""

    def __init__(
        self,
        registry: ActionRegistry,
        judge: SecurityJudge,
        model: ModelProvider,
        data_access: Any,
        cache: Optional[TieredCache] = None,
        mode_detector: Optional[ModeDetector] = None,
        enricher: Optional[ContextEnricher] = None,
        window: Optional[ContextWindow] = None,
        max_hops: int = 5,
        dependency_timeout_ms: int = 150,
        retry_backoff_ms: int = 50,
        model_timeout_ms: int = 200,
    ):
        self.registry = registry
        self.judge = judge
        self.model = model
        self.data_access = data_access
        self.cache = cache
        self.mode_detector = mode_detector or ModeDetector()
        self.enricher = enricher or ContextEnricher(data_access, dependency_timeout_ms)
        self.window = window or ContextWindow()
        self.max_hops = max_hops
        self.dependency_timeout_ms = dependency_timeout_ms
        self.retry_backoff_ms = retry_backoff_ms
        self.model_timeout_ms = model_timeout_ms
        self.workflow = self._create_workflow()

    @property
    def recursion_limit(self) -> int:
        return 2 * self.max_hops + 10

    def _create_workflow(self) -> Any:
        """Create the turn workflow graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("validate_input", self._node("validate_input", self.validate_input_node))
        workflow.add_node("detect_mode", self._node("detect_mode", self.detect_mode_node))
        workflow.add_node("enrich_context", self._node("enrich_context", self.enrich_context_node))
        workflow.add_node("select_action", self._node("select_action", self.select_action_node))
        workflow.add_node("execute_tool", self._node("execute_tool", self.execute_tool_node))
        workflow.add_node("validate_output", self._node("validate_output", self.validate_output_node))
        workflow.add_node("format_response", self._node("format_response", self.format_response_node))
        workflow.add_node("error_recovery", self._node("error_recovery", self.error_recovery_node))

        workflow.set_entry_point("validate_input")

        workflow.add_conditional_edges(
            "validate_input",
            self.route_after_input,
            {"continue": "detect_mode", "blocked": "format_response", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "detect_mode",
            self.route_on_failure,
            {"continue": "enrich_context", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "enrich_context",
            self.route_on_failure,
            {"continue": "select_action", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "select_action",
            self.route_after_selection,
            {"execute": "execute_tool", "respond": "format_response", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "execute_tool",
            self.route_on_failure,
            {"continue": "validate_output", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "validate_output",
            self.route_after_output,
            {"next_tool": "execute_tool", "respond": "format_response", "error": "error_recovery"},
        )
        workflow.add_conditional_edges(
            "format_response",
            self.route_on_failure,
            {"continue": END, "error": "error_recovery"},
        )
        workflow.add_edge("error_recovery", END)

        return workflow.compile()

    def _node(self, name: str, fn: Callable[[TurnState], Awaitable[Dict[str, Any]]]) -> Callable[[TurnState], Awaitable[Dict[str, Any]]]:
        """Wrap a node: failures become ErrorInfo, commands feed both channels"""

        async def run(state: TurnState) -> Dict[str, Any]:
            start = time.perf_counter()
            try:
                update = await fn(state)
            except AssistantError as e:
                logger.warning("Node failed", node=name, error_type=e.error_type, error=e.message)
                update = {"failure": e.to_info(node=name)}
            except Exception as e:
                logger.error("Node raised unexpectedly", node=name, error=str(e), exc_info=True)
                update = {"failure": ErrorInfo(
                    error_type="InternalError",
                    message=str(e) or type(e).__name__,
                    user_message=USER_MESSAGES["InternalError"],
                    node=name,
                )}

            duration_ms = round((time.perf_counter() - start) * 1000, 3)
            commands = list(update.pop("commands", [])) + [metric("node_duration", duration_ms, label=name)]
            update["conversation"] = commands
            update["turn_commands"] = commands
            update["last_node"] = name
            update["node_duration_ms"] = duration_ms

            assistant_logger.log_node_transition(
                session_id=state["conversation"].session_id,
                node=name,
                duration_ms=duration_ms,
                commands=len(commands),
            )
            return update

        return run

    def _security_context(self, state: TurnState, mode: Optional[Mode]) -> SecurityContext:
        conversation = state["conversation"]
        return SecurityContext(
            session_id=conversation.session_id,
            client_id=state.get("client_id"),
            mode=mode,
            permissions=conversation.context.permissions,
            threat_level=conversation.security.threat_level,
            last_violation_at=conversation.security.last_violation_at,
        )

    # Nodes

    async def validate_input_node(self, state: TurnState) -> Dict[str, Any]:
        """Judge the raw utterance; unsafe input never reaches the model"""

        utterance = state.get("utterance") or ""
        if not utterance.strip():
            raise ValidationError("Empty message content")

        mode = state.get("requested_mode")
        verdict = await self.judge.validate_input(utterance, self._security_context(state, mode))

        commands: List[BaseCommand] = [SetError(error=None), SetLastAction(action=None)]
        customer_id = state.get("customer_id")
        if customer_id and customer_id != state["conversation"].context.customer_id:
            commands.append(MergeContext(values={"customer_id": customer_id}))
        commands.extend(self.judge.commands_for(verdict))
        if verdict.safe:
            commands.append(message("user", verdict.sanitized_input or utterance))

        return {
            "blocked": not verdict.safe,
            "fallback_message": verdict.fallback_message,
            "retry_after_seconds": verdict.retry_after_seconds,
            "sanitized_input": verdict.sanitized_input,
            "commands": commands,
        }

    async def detect_mode_node(self, state: TurnState) -> Dict[str, Any]:
        conversation = state["conversation"]
        utterance = state.get("sanitized_input") or state["utterance"]
        requested = state.get("requested_mode")

        if requested in (Mode.B2C, Mode.B2B):
            detection = ModeDetection(mode=requested, previous_mode=conversation.effective_mode, indicators=["requested"])
        else:
            order_volume = await self.mode_detector.fetch_order_volume(
                self.data_access, conversation.context.customer_id, self.dependency_timeout_ms
            )
            detection = self.mode_detector.analyze(conversation, utterance, order_volume)

        if detection.changed:
            logger.info("Mode changed", previous=detection.previous_mode.value, mode=detection.mode.value,
                        indicators=detection.indicators)

        tools = self.registry.list_available(detection.mode, conversation.context.permissions)
        return {
            "detection": detection,
            "budget_tier": budget_tier(detection.mode, utterance, detection),
            "commands": [
                SetMode(mode=detection.mode),
                SetAvailableActions(actions=[tool.name for tool in tools]),
            ],
        }

    async def enrich_context_node(self, state: TurnState) -> Dict[str, Any]:
        conversation = state["conversation"]
        utterance = state.get("sanitized_input") or state["utterance"]
        enriched = await self.enricher.enrich_context(conversation, conversation.effective_mode, utterance)
        return {
            "enriched": enriched,
            "commands": [metric("degraded", label=field) for field in enriched.degraded_fields],
        }

    async def select_action_node(self, state: TurnState) -> Dict[str, Any]:
        """Single streamed model call deciding which tools to run

        A reply without tool calls is kept as its streamed chunks; they are
        released by format_response once the joined text passes validation.
        """

        conversation = state["conversation"]
        mode = conversation.effective_mode
        tools = self.registry.list_available(mode, conversation.context.permissions)

        messages = [{"role": "system", "content": self._system_prompt(conversation, state.get("enriched"))}]
        for entry in self.window.model_messages(conversation):
            messages.append({
                "role": entry.role,
                "content": entry.content,
                "tool_calls": [call.model_dump() for call in entry.tool_calls],
                "tool_call_id": entry.tool_call_id,
            })

        response = await self._complete(messages, tools)

        commands: List[BaseCommand] = []
        if response.tool_calls:
            commands.append(message("assistant", response.content, tool_calls=response.tool_calls))

        return {
            "pending_calls": list(response.tool_calls),
            "draft": response.content,
            "draft_chunks": list(response.chunks),
            "hops": 0,
            "commands": commands,
        }

    async def _complete(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> ModelResponse:
        try:
            return await asyncio.wait_for(
                gather_stream(self.model, messages, tools), timeout=self.model_timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            raise TransientDependencyError(
                f"Model did not answer within {self.model_timeout_ms}ms",
                details={"timeout_ms": self.model_timeout_ms},
            )

    async def execute_tool_node(self, state: TurnState) -> Dict[str, Any]:
        """Run the next pending tool call"""

        conversation = state["conversation"]
        mode = conversation.effective_mode
        call, remaining = state["pending_calls"][0], state["pending_calls"][1:]
        commands: List[BaseCommand] = []

        try:
            params = self.registry.resolve(call.name, call.args)
            definition = self.registry.get(call.name)
        except ValidationError as e:
            logger.info("Tool call rejected", action=call.name, error=e.message)
            result = ActionResult.failure(call.name, ExecutionError.from_exception(e))
        else:
            verdict = self.judge.validate_action(definition, params, self._security_context(state, mode))
            commands.extend(self.judge.commands_for(verdict))
            if verdict.safe:
                result = await self._invoke(call.name, params, conversation, mode)
            else:
                error = SecurityViolation(verdict.reason or "Action blocked", user_message=verdict.fallback_message)
                result = ActionResult.failure(call.name, ExecutionError.from_exception(error))

        if result.error is not None and result.error.kind == "transient":
            return {"failure": result.error.to_info(node="execute_tool"), "commands": commands}

        commands.extend(result.commands)
        if any(isinstance(command, MergeCart) for command in result.commands):
            await self._invalidate_cart(conversation, result.commands)

        if result.error is not None:
            commands.append(metric("error", label=result.error.error_type))
            content = result.error.user_message
        else:
            content = result.message or json.dumps(result.data, default=str)

        commands.append(SetLastAction(action=call.name))
        commands.append(message("tool", content, tool_call_id=call.id, name=call.name))

        return {
            "pending_calls": remaining,
            "hops": state.get("hops", 0) + 1,
            "results": [result],
            "commands": commands,
        }

    async def _invoke(self, name: str, params: Dict[str, Any], conversation: ConversationState, mode: Mode) -> ActionResult:
        context = ActionContext(
            session_id=conversation.session_id,
            mode=mode,
            state=conversation,
            data_access=self.data_access,
            permissions=conversation.context.permissions,
            dependency_timeout_ms=self.dependency_timeout_ms,
        )
        result = await self.registry.invoke(name, params, context)
        if result.error is not None and result.error.kind == "transient":
            logger.info("Retrying transient action failure", action=name, error=result.error.message)
            await asyncio.sleep(self.retry_backoff_ms / 1000)
            result = await self.registry.invoke(name, params, context)
        return result

    async def _invalidate_cart(self, conversation: ConversationState, commands: List[BaseCommand]) -> None:
        if self.cache is None:
            return
        identities = {conversation.cart_identity}
        identities.update(c.cart_id for c in commands if isinstance(c, MergeCart) and c.cart_id)
        for identity in identities:
            await self.cache.invalidate_tag(cart_tag(identity))

    async def validate_output_node(self, state: TurnState) -> Dict[str, Any]:
        conversation = state["conversation"]
        result = state["results"][-1]
        text = result.message if result.error is None else result.error.user_message
        truncated = bool(state.get("pending_calls")) and state.get("hops", 0) >= self.max_hops

        if not text:
            return {"truncated": truncated}

        verdict = await self.judge.validate_output(text, self._security_context(state, conversation.effective_mode))
        reply = self.judge.filter_output(text) if verdict.safe else verdict.fallback_message
        return {
            "replies": [reply or GENERIC_FALLBACK],
            "truncated": truncated,
            "commands": self.judge.commands_for(verdict),
        }

    async def format_response_node(self, state: TurnState) -> Dict[str, Any]:
        conversation = state["conversation"]
        commands: List[BaseCommand] = []
        chunks: List[str] = []

        if state.get("blocked"):
            text = state.get("fallback_message") or GENERIC_FALLBACK
        elif state.get("replies"):
            text = "\n\n".join(reply for reply in state["replies"] if reply)
            if state.get("truncated"):
                text = f"{text}\n\n{PARTIAL_RESULT_MESSAGE}"
        else:
            draft = state.get("draft") or ""
            verdict = await self.judge.validate_output(
                draft, self._security_context(state, conversation.effective_mode)
            )
            commands.extend(self.judge.commands_for(verdict))
            text = self.judge.filter_output(draft) if verdict.safe else verdict.fallback_message
            text = text or GENERIC_FALLBACK
            # Streamed pieces go out as-is only when validation left the text untouched
            if state.get("draft_chunks") and text == draft:
                chunks = list(state["draft_chunks"])

        commands.append(message("assistant", text))
        truncation = self.window.truncation(conversation, pending=1)
        if truncation is not None:
            commands.append(truncation)

        return {"response": text, "chunks": chunks, "commands": commands}

    async def error_recovery_node(self, state: TurnState) -> Dict[str, Any]:
        """Record the failure and answer with a degraded message"""

        failure = state.get("failure") or ErrorInfo(
            error_type="InternalError",
            message="Unknown failure",
            user_message=USER_MESSAGES["InternalError"],
            node=state.get("last_node"),
        )
        logger.warning("Recovering from node failure", node=failure.node, error_type=failure.error_type)

        commands = recovery_commands(failure)
        truncation = self.window.truncation(state["conversation"], pending=1)
        if truncation is not None:
            commands.append(truncation)
        return {"response": failure.user_message, "failure": failure, "commands": commands}

    # Routing

    def route_on_failure(self, state: TurnState) -> Literal["continue", "error"]:
        return "error" if state.get("failure") else "continue"

    def route_after_input(self, state: TurnState) -> Literal["continue", "blocked", "error"]:
        if state.get("failure"):
            return "error"
        if state.get("blocked"):
            return "blocked"
        return "continue"

    def route_after_selection(self, state: TurnState) -> Literal["execute", "respond", "error"]:
        if state.get("failure"):
            return "error"
        return "execute" if state.get("pending_calls") else "respond"

    def route_after_output(self, state: TurnState) -> Literal["next_tool", "respond", "error"]:
        if state.get("failure"):
            return "error"
        if state.get("pending_calls") and state.get("hops", 0) < self.max_hops:
            return "next_tool"
        return "respond"

    @staticmethod
    def _system_prompt(conversation: ConversationState, enriched: Optional[EnrichedContext]) -> str:
        lines = [enriched.system_prompt if enriched else ""]
        cart = conversation.cart
        if cart.items:
            lines.append(f"Cart: {cart.total_quantity} units across {len(cart.items)} lines, subtotal {cart.subtotal:.2f} {cart.currency}.")
        if conversation.context.customer_tier:
            lines.append(f"Customer tier: {conversation.context.customer_tier}.")
        if enriched is not None:
            if enriched.account:
                lines.append(f"Account: {json.dumps(enriched.account, default=str)}")
            if enriched.degraded_fields:
                lines.append(f"Unavailable context: {', '.join(enriched.degraded_fields)}.")
        return "\n".join(line for line in lines if line)
