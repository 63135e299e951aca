from typing import Dict, Any, List, Optional, AsyncIterator, Awaitable, Callable
import asyncio
import time
import uuid
import structlog

from commerce_agent.application.schema.events import (
    AssistantEvent, MetadataEvent, ContentChunkEvent, ActionResultEvent, ErrorEvent, DoneEvent,
    ActionSummary, TurnResponse,
)
from commerce_agent.domain.errors import DeadlineExceeded, ErrorInfo, USER_MESSAGES
from commerce_agent.domain.models.action import ActionResult
from commerce_agent.domain.models.commands import BaseCommand
from commerce_agent.domain.models.conversation_state import ConversationState, Mode
from commerce_agent.domain.orchestration.core.commerce_graph import CommerceGraph, recovery_commands
from commerce_agent.domain.state.state_store import StateStore
from commerce_agent.domain.streaming.event_channel import EventChannel
from commerce_agent.infrastructure.observability.langfuse_tracing import TurnTracer
from commerce_agent.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

Emit = Callable[[AssistantEvent], Awaitable[None]]

CHUNK_SIZE = 48


async def _discard(event: AssistantEvent) -> None:
    return None


def _chunks(text: str, size: int = CHUNK_SIZE) -> List[str]:
    """Split on word boundaries into chunks of roughly ``size`` characters"""

    chunks: List[str] = []
    current = ""
    for word in text.split(" "):
        candidate = f"{current} {word}" if current else word
        if len(candidate) > size and current:
            chunks.append(current + " ")
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class TurnExecutor:
    """Runs turns through the graph under a deadline and commits their commands"""

    def __init__(
        self,
        graph: CommerceGraph,
        store: StateStore,
        tracer: Optional[TurnTracer] = None,
        standard_budget_ms: int = 250,
        b2b_budget_ms: int = 1000,
        bulk_budget_ms: int = 5000,
        channel_size: int = 64,
    ):
        self.graph = graph
        self.store = store
        self.tracer = tracer or TurnTracer()
        self.budgets_ms = {"standard": standard_budget_ms, "b2b": b2b_budget_ms, "bulk": bulk_budget_ms}
        self.channel_size = channel_size

    async def run_turn(
        self,
        session_id: str,
        message: str,
        mode: Optional[Mode] = None,
        client_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> TurnResponse:
        """Run a turn to completion"""
        return await self._execute(session_id, message, mode, client_id, customer_id, _discard)

    async def stream_turn(
        self,
        session_id: str,
        message: str,
        mode: Optional[Mode] = None,
        client_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> AsyncIterator[AssistantEvent]:
        """Run a turn, yielding events as they happen

        The producer runs as its own task feeding a bounded channel. When the
        consumer stops early the producer is cancelled.
        """

        channel = EventChannel(maxsize=self.channel_size)

        async def produce() -> None:
            try:
                await self._execute(session_id, message, mode, client_id, customer_id, channel.send)
            except asyncio.CancelledError:
                channel.abort()
                raise
            finally:
                if not channel.closed:
                    await channel.close()

        producer = asyncio.create_task(produce())
        try:
            async for event in channel:
                yield event
        finally:
            if not producer.done():
                producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                logger.info("Turn stream cancelled by consumer", session_id=session_id)

    def _initial_budget_ms(self, state: ConversationState, mode: Optional[Mode]) -> int:
        if (mode or state.mode) == Mode.B2B:
            return self.budgets_ms["b2b"]
        return self.budgets_ms["standard"]

    async def _execute(
        self,
        session_id: str,
        message: str,
        mode: Optional[Mode],
        client_id: Optional[str],
        customer_id: Optional[str],
        emit: Emit,
    ) -> TurnResponse:
        async with self.store.lock(session_id):
            state = await self.store.load(session_id)
            turn_id = uuid.uuid4().hex
            structlog.contextvars.bind_contextvars(turn_id=turn_id, session_id=session_id)
            try:
                return await self._run_locked(state, turn_id, message, mode, client_id, customer_id, emit)
            finally:
                structlog.contextvars.unbind_contextvars("turn_id", "session_id")

    async def _run_locked(
        self,
        state: ConversationState,
        turn_id: str,
        message: str,
        mode: Optional[Mode],
        client_id: Optional[str],
        customer_id: Optional[str],
        emit: Emit,
    ) -> TurnResponse:
        session_id = state.session_id
        loop = asyncio.get_running_loop()
        started = loop.time()
        budget_ms = self._initial_budget_ms(state, mode)
        trace = self.tracer.start_turn(session_id, turn_id, message, metadata={"requested_mode": mode.value if mode else None})

        commands: List[BaseCommand] = []
        results: List[ActionResult] = []
        response_text: Optional[str] = None
        failure: Optional[ErrorInfo] = None
        current_mode = mode if mode in (Mode.B2C, Mode.B2B) else state.effective_mode
        last_node: Optional[str] = None
        retry_after: Optional[float] = None
        announced = False
        streamed = False

        async def announce() -> None:
            nonlocal announced
            if not announced:
                announced = True
                await emit(MetadataEvent(turn_id=turn_id, data={
                    "session_id": session_id,
                    "mode": current_mode.value,
                    "budget_ms": budget_ms,
                }))

        async def send_content(pieces: List[str]) -> None:
            nonlocal streamed
            streamed = True
            for piece in pieces:
                await emit(ContentChunkEvent(turn_id=turn_id, data={"content": piece}))

        initial: Dict[str, Any] = {
            "conversation": state,
            "turn_commands": [],
            "turn_id": turn_id,
            "utterance": message,
            "requested_mode": mode,
            "client_id": client_id,
            "customer_id": customer_id,
            "results": [],
            "replies": [],
            "hops": 0,
        }

        try:
            async with asyncio.timeout(budget_ms / 1000) as deadline:
                async for update in self.graph.workflow.astream(
                    initial,
                    config={"recursion_limit": self.graph.recursion_limit},
                    stream_mode="updates",
                ):
                    for node, payload in update.items():
                        if not payload:
                            continue
                        last_node = node
                        commands.extend(payload.get("turn_commands", []))
                        trace.node_span(node, payload.get("node_duration_ms", 0.0))

                        if node == "detect_mode" and payload.get("detection") is not None:
                            current_mode = payload["detection"].mode
                            tier_ms = self.budgets_ms[payload.get("budget_tier", "standard")]
                            if tier_ms > budget_ms:
                                budget_ms = tier_ms
                                deadline.reschedule(started + budget_ms / 1000)
                                logger.debug("Turn budget extended", budget_ms=budget_ms)

                        if node == "validate_input":
                            retry_after = payload.get("retry_after_seconds")

                        await announce()

                        for result in payload.get("results", []):
                            results.append(result)
                            await emit(ActionResultEvent(turn_id=turn_id, data={
                                "action": result.action,
                                "success": result.success,
                                "cached": result.cached,
                                "data": result.data,
                                "error": result.error.model_dump() if result.error else None,
                            }))

                        if node in ("format_response", "error_recovery") and payload.get("response") is not None:
                            response_text = payload["response"]
                            if node == "error_recovery":
                                failure = payload.get("failure")
                            await send_content(payload.get("chunks") or _chunks(response_text))
        except TimeoutError:
            failure = DeadlineExceeded(
                f"Turn exceeded its {budget_ms}ms budget",
                details={"budget_ms": budget_ms},
            ).to_info(node=last_node)
            logger.warning("Turn deadline exceeded", budget_ms=budget_ms, last_node=last_node)
            commands.extend(recovery_commands(failure))
            response_text = failure.user_message
        except Exception as e:
            logger.error("Turn failed outside graph nodes", error=str(e), exc_info=True)
            failure = ErrorInfo(
                error_type="InternalError",
                message=str(e) or type(e).__name__,
                user_message=USER_MESSAGES["InternalError"],
                node=last_node,
            )
            commands.extend(recovery_commands(failure))
            response_text = failure.user_message

        final = await self.store.commit(session_id, commands)
        duration_ms = round((loop.time() - started) * 1000, 3)
        text = response_text or ""

        await announce()
        if not streamed:
            await send_content(_chunks(text))
        if failure is not None:
            await emit(ErrorEvent(turn_id=turn_id, data={
                "error_type": failure.error_type,
                "message": failure.user_message,
                "retryable": failure.retryable,
            }))
        await emit(DoneEvent(turn_id=turn_id, data={
            "mode": final.mode.value,
            "duration_ms": duration_ms,
            "error_type": failure.error_type if failure else None,
            "retry_after_seconds": retry_after,
        }))

        metrics.record_latency("turn", duration_ms, tags={"mode": final.mode.value})
        metrics.increment_counter("turns.total")
        if failure is not None:
            metrics.increment_counter(f"turns.error.{failure.error_type}")
        trace.end(text, error_type=failure.error_type if failure else None, metadata={"duration_ms": duration_ms})

        logger.info("Turn completed", mode=final.mode.value, duration_ms=duration_ms,
                    actions=[r.action for r in results], error_type=failure.error_type if failure else None)

        return TurnResponse(
            session_id=session_id,
            turn_id=turn_id,
            message=text,
            mode=final.mode,
            actions=[
                ActionSummary(
                    name=r.action,
                    success=r.success,
                    cached=r.cached,
                    error_type=r.error.error_type if r.error else None,
                    data=r.data,
                )
                for r in results
            ],
            error=failure,
            commands=[c.model_dump(mode="json") for c in commands],
            duration_ms=duration_ms,
            retry_after_seconds=retry_after,
        )
