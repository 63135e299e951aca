"""Tests for the turn graph and executor, end to end against the in-memory backend."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.language_models import FakeListChatModel

from commerce_agent.application.bootstrap import build_executor
from commerce_agent.application.schema.events import EventType
from commerce_agent.domain.cache.memory_backend import InMemoryDistributedCache
from commerce_agent.domain.context.mode_detector import ModeDetection
from commerce_agent.domain.errors import TransientDependencyError, USER_MESSAGES
from commerce_agent.domain.models.conversation_state import Mode, ToolCall
from commerce_agent.domain.orchestration.core.commerce_graph import PARTIAL_RESULT_MESSAGE, budget_tier
from commerce_agent.domain.security.judge import GENERIC_FALLBACK, RATE_LIMIT_FALLBACK
from commerce_agent.infrastructure.config.settings import AssistantSettings
from commerce_agent.infrastructure.llm.langchain_model import LangChainModelProvider
from commerce_agent.infrastructure.llm.model_provider import ModelProvider, ModelResponse
from commerce_agent.infrastructure.observability.logging import metrics
from commerce_agent.infrastructure.udl.mock_backend import InMemoryCommerceBackend


def _make_settings(**overrides) -> AssistantSettings:
    values = {
        "standard_budget_ms": 5000,
        "b2b_budget_ms": 5000,
        "bulk_budget_ms": 10000,
        "dependency_timeout_ms": 1000,
        "retry_backoff_ms": 0,
    }
    values.update(overrides)
    return AssistantSettings(**values)


def _make_executor(backend=None, model=None, **overrides):
    return build_executor(_make_settings(**overrides), data_access=backend or InMemoryCommerceBackend(), model=model)


def _call(name: str, args: Dict[str, Any], call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, args=args)


class ScriptedModel(ModelProvider):
    """Replays canned responses; the last one repeats"""

    def __init__(self, *responses: ModelResponse, error: Optional[Exception] = None):
        self.responses = list(responses)
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, messages, tools):
        self.calls.append({"messages": messages, "tools": [tool.name for tool in tools]})
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class StreamingModel(ModelProvider):
    """Streams a fixed reply in the given pieces"""

    def __init__(self, *pieces: str):
        self.pieces = list(pieces)

    async def invoke(self, messages, tools):
        return ModelResponse(content="".join(self.pieces))

    async def astream(self, messages, tools):
        for piece in self.pieces:
            await asyncio.sleep(0)
            yield ModelResponse(content=piece)


class SlowModel(ModelProvider):
    async def invoke(self, messages, tools):
        await asyncio.sleep(1)
        return ModelResponse(content="too late")


class _ToolReadyFakeChat(FakeListChatModel):
    """Fake chat model that accepts a tool menu and ignores it"""

    def bind_tools(self, tools, **kwargs):
        return self


class _SlowL2(InMemoryDistributedCache):
    async def get(self, key):
        await asyncio.sleep(1)
        return None

    async def set(self, key, value, ttl, tags=None):
        await asyncio.sleep(1)


class _FlakySearchBackend(InMemoryCommerceBackend):
    """Fails the first catalogue search with a transient error"""

    async def search_catalog(self, query, filters=None, limit=10):
        if self.calls["search_catalog"] == 0:
            self.calls["search_catalog"] += 1
            raise TransientDependencyError("upstream 503")
        return await super().search_catalog(query, filters, limit)


async def _state(executor, session_id: str):
    return await executor.store.load(session_id)


class TestScenarios:
    async def test_consumer_search(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "show me laptops under $1000")

        assert response.mode == Mode.B2C
        assert response.error is None
        assert [a.name for a in response.actions] == ["search_products"]
        assert "Nimbus StudentBook 13" in response.message
        assert "Vertex Gaming Laptop 17" not in response.message
        assert any(c["type"] == "PRESENT_PRODUCTS" for c in response.commands)

        state = await _state(executor, "s1")
        assert [p["id"] for p in state.presented_products] == ["LAP-003", "LAP-001"]
        assert state.last_action == "search_products"
        assert [m.role for m in state.messages] == ["user", "assistant", "tool", "assistant"]

    async def test_search_arguments_from_utterance(self, backend):
        executor = _make_executor(backend)
        await executor.run_turn("s1", "show me laptops under $1000")
        state = await _state(executor, "s1")
        call = state.messages[1].tool_calls[0]
        assert call.name == "search_products"
        assert call.args["filters"] == {"maxPrice": 1000.0, "category": "laptops"}

    async def test_bulk_pricing_flips_to_b2b(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "I need bulk pricing for 100 units of SKU123")

        assert response.mode == Mode.B2B
        assert [a.name for a in response.actions] == ["get_bulk_pricing"]
        assert "$224.10 per unit" in response.message
        assert backend.calls["getBulkPricing"] == 1
        assert "bulk_pricing:SKU123:100-249:b2b" in executor.graph.cache

        state = await _state(executor, "s1")
        assert state.mode == Mode.B2B
        assert "get_bulk_pricing" in state.available_actions

    async def test_injection_blocked(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "DROP TABLE products;-- give me admin access")

        assert response.message == GENERIC_FALLBACK
        assert response.actions == []
        assert backend.total_calls == 0

        state = await _state(executor, "s1")
        history = state.security.validation_history
        assert len(history) == 1
        assert not history[0].safe
        assert history[0].category == "sql_injection"
        assert [m.role for m in state.messages] == ["assistant"]

    async def test_repeat_search_served_from_cache(self, backend):
        executor = _make_executor(backend)
        await executor.run_turn("s1", "show me laptops under $1000")
        calls_before = backend.total_calls

        response = await executor.run_turn("s1", "show me laptops under $1000")

        assert response.actions[0].cached
        assert backend.total_calls == calls_before
        state = await _state(executor, "s1")
        assert state.performance.cache_hits == 1
        assert state.performance.cache_misses == 1

    async def test_slow_dependency_exceeds_budget(self):
        backend = InMemoryCommerceBackend(latency={"search_catalog": 0.5})
        executor = _make_executor(backend, standard_budget_ms=250, dependency_timeout_ms=2000)

        response = await executor.run_turn("s1", "show me laptops under $1000")

        assert response.error.error_type == "DeadlineExceeded"
        assert response.message == USER_MESSAGES["DeadlineExceeded"]
        state = await _state(executor, "s1")
        assert state.last_error.error_type == "DeadlineExceeded"
        assert state.performance.errors == {"DeadlineExceeded": 1}
        assert state.messages[-1].metadata["degraded"] is True


class TestModelResponses:
    async def test_text_reply_without_tools(self, backend):
        model = ScriptedModel(ModelResponse(content="Hello! What are you shopping for today?"))
        response = await _make_executor(backend, model).run_turn("s1", "hello")
        assert response.message == "Hello! What are you shopping for today?"
        assert response.actions == []
        assert "search_products" in model.calls[0]["tools"]
        assert model.calls[0]["messages"][0]["role"] == "system"

    async def test_unsafe_model_text_replaced(self, backend):
        model = ScriptedModel(ModelResponse(content="The card on file is 4111 1111 1111 1111"))
        executor = _make_executor(backend, model)
        response = await executor.run_turn("s1", "what card do I use")

        assert response.message == GENERIC_FALLBACK
        state = await _state(executor, "s1")
        assert [r.direction for r in state.security.validation_history] == ["input", "output"]
        assert not state.security.validation_history[-1].safe

    async def test_tool_calls_limited_by_max_hops(self, backend):
        calls = [_call("search_products", {"query": "desk"}, f"call_{i}") for i in range(7)]
        executor = _make_executor(backend, ScriptedModel(ModelResponse(tool_calls=calls)))

        response = await executor.run_turn("s1", "find desks")

        assert len(response.actions) == 5
        assert response.message.endswith(PARTIAL_RESULT_MESSAGE)
        assert backend.calls["search_catalog"] == 1

    async def test_multiple_results_joined(self, backend):
        calls = [
            _call("search_products", {"query": "desk"}, "call_1"),
            _call("get_pricing", {"product_ids": ["SKU456"]}, "call_2"),
        ]
        response = await _make_executor(backend, ScriptedModel(ModelResponse(tool_calls=calls))).run_turn("s1", "desks?")
        assert [a.name for a in response.actions] == ["search_products", "get_pricing"]
        assert "ErgoPro Standing Desk" in response.message
        assert "SKU456: $29.99" in response.message

    async def test_unknown_tool_reported(self, backend):
        model = ScriptedModel(ModelResponse(tool_calls=[_call("refund_order", {"order_id": "1"})]))
        response = await _make_executor(backend, model).run_turn("s1", "refund my order")

        assert response.error is None
        assert response.actions[0].error_type == "ActionNotFound"
        assert response.message == USER_MESSAGES["ActionNotFound"]

    async def test_invalid_tool_params_reported(self, backend):
        model = ScriptedModel(ModelResponse(tool_calls=[_call("search_products", {"limit": 3})]))
        response = await _make_executor(backend, model).run_turn("s1", "find something")

        assert response.actions[0].error_type == "ValidationError"
        assert response.message == USER_MESSAGES["ValidationError"]
        assert backend.total_calls == 0

    async def test_business_action_blocked_in_b2c(self, backend):
        model = ScriptedModel(ModelResponse(tool_calls=[_call("get_bulk_pricing", {"sku": "SKU123", "quantity": 10})]))
        executor = _make_executor(backend, model)
        response = await executor.run_turn("s1", "hello")

        assert response.actions[0].error_type == "SecurityViolation"
        assert backend.calls["getBulkPricing"] == 0
        assert "get_bulk_pricing" not in model.calls[0]["tools"]

    async def test_model_failure_recovers(self, backend):
        model = ScriptedModel(error=RuntimeError("model endpoint unreachable"))
        response = await _make_executor(backend, model).run_turn("s1", "hello")

        assert response.error.error_type == "InternalError"
        assert response.error.node == "select_action"
        assert response.message == USER_MESSAGES["InternalError"]

    async def test_slow_model_is_transient_failure(self, backend):
        executor = _make_executor(backend, SlowModel(), model_timeout_ms=50)
        response = await executor.run_turn("s1", "hello")

        assert response.error.error_type == "TransientDependencyError"
        assert response.error.node == "select_action"
        assert response.error.retryable
        assert response.message == USER_MESSAGES["TransientDependencyError"]

    async def test_chat_model_wired_by_bootstrap(self, backend):
        chat_model = _ToolReadyFakeChat(responses=["Happy to help with your order."])
        executor = build_executor(_make_settings(), data_access=backend, chat_model=chat_model)

        assert isinstance(executor.graph.model, LangChainModelProvider)
        response = await executor.run_turn("s1", "hello")
        assert response.error is None
        assert response.message == "Happy to help with your order."


class TestDependencyFailures:
    async def test_slow_l2_cache_is_a_miss(self, backend):
        settings = _make_settings(standard_budget_ms=250, cache_l2_timeout_ms=20)
        executor = build_executor(settings, data_access=backend, cache_backend=_SlowL2())

        response = await executor.run_turn("s1", "show me laptops under $1000")

        assert response.error is None
        assert [a.name for a in response.actions] == ["search_products"]
        assert "Nimbus StudentBook 13" in response.message
        assert executor.graph.cache.stats["l2_errors"] >= 2

    async def test_transient_error_retried_once_then_recovered(self):
        backend = InMemoryCommerceBackend(failures={"search_catalog": TransientDependencyError("upstream 503")})
        executor = _make_executor(backend)

        response = await executor.run_turn("s1", "show me laptops")

        assert backend.calls["search_catalog"] == 2
        assert response.error.error_type == "TransientDependencyError"
        assert response.error.retryable
        assert response.message == USER_MESSAGES["TransientDependencyError"]
        assert (await _state(executor, "s1")).last_error.error_type == "TransientDependencyError"

    async def test_transient_error_recovered_by_retry(self):
        backend = _FlakySearchBackend()
        response = await _make_executor(backend).run_turn("s1", "show me laptops")

        assert response.error is None
        assert response.actions[0].success
        assert backend.calls["search_catalog"] == 2

    async def test_permanent_error_answered_in_turn(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "add SKU999 to my cart")

        assert response.error is None
        assert response.actions[0].error_type == "PermanentDependencyError"
        assert response.message == USER_MESSAGES["PermanentDependencyError"]
        state = await _state(executor, "s1")
        assert state.last_error is None
        assert state.performance.errors == {"PermanentDependencyError": 1}

    async def test_last_error_cleared_on_next_turn(self):
        backend = InMemoryCommerceBackend(failures={"search_catalog": TransientDependencyError("upstream 503")})
        executor = _make_executor(backend)
        await executor.run_turn("s1", "show me laptops")

        backend.failures.clear()
        response = await executor.run_turn("s1", "show me laptops")

        assert response.error is None
        assert (await _state(executor, "s1")).last_error is None

    async def test_empty_message_is_validation_error(self, backend):
        response = await _make_executor(backend).run_turn("s1", "   ")
        assert response.error.error_type == "ValidationError"
        assert response.error.node == "validate_input"


class TestCart:
    async def test_add_to_cart_updates_state(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "add 2 SKU456 to my cart")

        assert response.message == "Added 2 x Nimbus Wireless Mouse to your cart."
        cart = (await _state(executor, "s1")).cart
        assert cart.cart_id.startswith("cart_")
        assert [(i.product_id, i.quantity) for i in cart.items] == [("SKU456", 2)]
        assert cart.subtotal == 59.98

    async def test_cart_change_invalidates_cart_summary(self, backend):
        executor = _make_executor(backend)
        cache = executor.graph.cache

        empty = await executor.run_turn("s1", "show me my cart")
        assert empty.message == "Your cart is empty."

        await executor.run_turn("s1", "add 2 SKU456 to my cart")
        assert await cache.invalidate_tag("cart:s1") == 0

        summary = await executor.run_turn("s1", "show me my cart")
        assert not summary.actions[0].cached
        assert "2 x Nimbus Wireless Mouse" in summary.message

    async def test_history_truncated(self, backend):
        model = ScriptedModel(ModelResponse(content="Sure."))
        executor = _make_executor(backend, model, history_limit_messages=4)
        for _ in range(3):
            await executor.run_turn("s1", "hello")

        messages = (await _state(executor, "s1")).messages
        assert len(messages) == 4
        assert messages[-1].role == "assistant"

    async def test_clear_cart_needs_confirmation(self, backend):
        executor = _make_executor(backend)
        await executor.run_turn("s1", "add 2 SKU456 to my cart")

        asked = await executor.run_turn("s1", "clear my cart")
        assert "confirm" in asked.message
        assert len((await _state(executor, "s1")).cart.items) == 1

        cleared = await executor.run_turn("s1", "yes, empty my cart")
        assert cleared.message == "Your cart is now empty."
        assert (await _state(executor, "s1")).cart.items == []

    async def test_compare_products_turn(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "compare LAP-001 vs LAP-003")

        assert response.actions[0].name == "compare_products"
        assert "Lowest price: Nimbus StudentBook 13" in response.message
        assert [p["id"] for p in (await _state(executor, "s1")).presented_products] == ["LAP-001", "LAP-003"]


class TestModeAndBudget:
    async def test_b2b_mode_is_sticky(self, backend):
        executor = _make_executor(backend)
        await executor.run_turn("s1", "I need bulk pricing for 100 units of SKU123")
        response = await executor.run_turn("s1", "show me desks")
        assert response.mode == Mode.B2B

    async def test_requested_mode_wins(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "show me laptops", mode=Mode.B2B)
        assert response.mode == Mode.B2B
        assert backend.calls["getOrderVolume"] == 0

    @pytest.mark.parametrize("mode, utterance, indicators, tier", [
        (Mode.B2C, "show me laptops", [], "standard"),
        (Mode.B2B, "show me laptops", [], "b2b"),
        (Mode.B2B, "quote for 1,000 units of SKU123", [], "bulk"),
        (Mode.B2B, "here is our order", ["csv_upload"], "bulk"),
    ])
    def test_budget_tier(self, mode, utterance, indicators, tier):
        detection = ModeDetection(mode=mode, previous_mode=mode, indicators=indicators)
        assert budget_tier(mode, utterance, detection) == tier

    async def test_bulk_turn_gets_extended_budget(self):
        backend = InMemoryCommerceBackend(latency={"getBulkPricing": 0.4})
        executor = _make_executor(
            backend, standard_budget_ms=250, b2b_budget_ms=1000, bulk_budget_ms=5000, dependency_timeout_ms=2000,
        )
        response = await executor.run_turn("s1", "I need bulk pricing for 100 units of SKU123")

        assert response.error is None
        assert response.actions[0].name == "get_bulk_pricing"

    async def test_turn_metrics_recorded(self, backend):
        await _make_executor(backend).run_turn("s1", "show me laptops")
        summary = metrics.get_metrics_summary()
        assert summary["turns.total"] == 1
        assert summary["latency.turn"]["count"] == 1


class TestAccount:
    async def test_customer_id_enables_account_actions(self):
        backend = InMemoryCommerceBackend(accounts={"cust-1": {"account_type": "enterprise"}})
        executor = _make_executor(backend)

        response = await executor.run_turn(
            "s1", "what is our available credit and payment terms", mode=Mode.B2B, customer_id="cust-1"
        )

        assert [a.name for a in response.actions] == ["get_account_credit"]
        assert "$35,000.00 available" in response.message
        assert backend.calls["getAccountContext"] == 1
        state = await _state(executor, "s1")
        assert state.context.customer_id == "cust-1"
        assert state.context.customer_tier == "enterprise"

    async def test_anonymous_session_asked_to_sign_in(self, backend):
        executor = _make_executor(backend)
        response = await executor.run_turn("s1", "what is our available credit", mode=Mode.B2B)

        assert response.actions[0].error_type == "ValidationError"
        assert "sign in" in response.message


class TestRateLimit:
    async def test_rate_limited_turn_carries_retry_after(self, backend):
        executor = _make_executor(backend, rate_limit_capacity=1, rate_limit_refill_per_second=0.01)

        first = await executor.run_turn("s1", "hello")
        assert first.retry_after_seconds is None

        limited = await executor.run_turn("s1", "hello")
        assert limited.message == RATE_LIMIT_FALLBACK
        assert limited.retry_after_seconds > 0

        events = [event async for event in executor.stream_turn("s1", "hello")]
        assert events[-1].type == EventType.DONE
        assert events[-1].data["retry_after_seconds"] > 0


class TestConcurrency:
    async def test_sessions_are_isolated(self):
        backend = InMemoryCommerceBackend(latency={"*": 0.02})
        executor = _make_executor(backend)

        await asyncio.gather(
            executor.run_turn("a", "show me laptops under $1000"),
            executor.run_turn("b", "I need bulk pricing for 100 units of SKU123"),
        )

        assert (await _state(executor, "a")).mode == Mode.B2C
        assert (await _state(executor, "b")).mode == Mode.B2B
        assert sorted(executor.store.sessions()) == ["a", "b"]

    async def test_same_session_turns_serialized(self, backend):
        model = ScriptedModel(ModelResponse(content="Sure."))
        executor = _make_executor(backend, model)

        await asyncio.gather(
            executor.run_turn("s1", "first"),
            executor.run_turn("s1", "second"),
        )

        messages = (await _state(executor, "s1")).messages
        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
        assert {messages[0].content, messages[2].content} == {"first", "second"}


class TestStreaming:
    async def test_event_order(self, backend):
        executor = _make_executor(backend)
        events = [event async for event in executor.stream_turn("s1", "show me laptops under $1000")]
        types = [event.type for event in events]

        assert types[0] == EventType.METADATA
        assert types[-1] == EventType.DONE
        assert EventType.ACTION_RESULT in types
        assert EventType.ERROR not in types
        assert types.index(EventType.ACTION_RESULT) < types.index(EventType.CONTENT_CHUNK)
        assert len({event.turn_id for event in events}) == 1

        text = "".join(e.data["content"] for e in events if e.type == EventType.CONTENT_CHUNK)
        assert text == (await _state(executor, "s1")).messages[-1].content

    async def test_deadline_emits_error_event(self):
        backend = InMemoryCommerceBackend(latency={"search_catalog": 0.5})
        executor = _make_executor(backend, standard_budget_ms=250, dependency_timeout_ms=2000)

        events = [event async for event in executor.stream_turn("s1", "show me laptops")]

        errors = [e for e in events if e.type == EventType.ERROR]
        assert errors[0].data["error_type"] == "DeadlineExceeded"
        assert events[-1].type == EventType.DONE
        assert events[-1].data["error_type"] == "DeadlineExceeded"

    async def test_consumer_disconnect_releases_session(self):
        backend = InMemoryCommerceBackend(latency={"search_catalog": 0.3})
        executor = _make_executor(backend)

        stream = executor.stream_turn("s1", "show me laptops")
        first = await stream.__anext__()
        assert first.type == EventType.METADATA
        await stream.aclose()

        assert not executor.store.locked("s1")
        assert executor.store._locks == {}
        backend.latency.clear()
        response = await executor.run_turn("s1", "show me laptops")
        assert response.error is None

    async def test_reply_streamed_in_model_chunks(self, backend):
        pieces = ["Hello! ", "What are you ", "shopping for today?"]
        executor = _make_executor(backend, StreamingModel(*pieces))
        executor.channel_size = 1

        events = []
        committed_at_first_chunk = None
        async for event in executor.stream_turn("s1", "hello"):
            if event.type == EventType.CONTENT_CHUNK and committed_at_first_chunk is None:
                committed_at_first_chunk = "s1" in executor.store.sessions()
            events.append(event)

        chunks = [e.data["content"] for e in events if e.type == EventType.CONTENT_CHUNK]
        assert chunks == pieces
        assert committed_at_first_chunk is False

        types = [event.type for event in events]
        last_chunk = max(i for i, t in enumerate(types) if t == EventType.CONTENT_CHUNK)
        assert last_chunk < types.index(EventType.DONE)
        assert (await _state(executor, "s1")).messages[-1].content == "".join(pieces)

    async def test_unsafe_streamed_reply_never_emitted(self, backend):
        executor = _make_executor(backend, StreamingModel("The card on file is ", "4111 1111 1111 1111"))
        events = [event async for event in executor.stream_turn("s1", "what card do I use")]

        chunks = [e.data["content"] for e in events if e.type == EventType.CONTENT_CHUNK]
        assert "".join(chunks) == GENERIC_FALLBACK
        assert not any("4111" in chunk for chunk in chunks)
