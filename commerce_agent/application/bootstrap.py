from typing import Any, Optional
from langchain_core.language_models.chat_models import BaseChatModel
import structlog

from commerce_agent.domain.actions import default_actions
from commerce_agent.domain.cache.cache_layer import TieredCache
from commerce_agent.domain.cache.memory_backend import DistributedCacheBackend, InMemoryDistributedCache
from commerce_agent.domain.context.context_enricher import ContextEnricher
from commerce_agent.domain.context.context_window import ContextWindow
from commerce_agent.domain.orchestration.core.commerce_graph import CommerceGraph
from commerce_agent.domain.orchestration.core.graph_executor import TurnExecutor
from commerce_agent.domain.security.judge import SecurityJudge
from commerce_agent.domain.security.rate_limiter import TokenBucketRateLimiter
from commerce_agent.domain.state.state_store import StateStore
from commerce_agent.domain.tool.definition_loader import load_action_document
from commerce_agent.domain.tool.tool_registry import ActionRegistry
from commerce_agent.infrastructure.config.settings import AssistantSettings
from commerce_agent.infrastructure.llm.heuristic_model import HeuristicModelProvider
from commerce_agent.infrastructure.llm.langchain_model import LangChainModelProvider
from commerce_agent.infrastructure.llm.model_provider import ModelProvider
from commerce_agent.infrastructure.observability.langfuse_tracing import TurnTracer
from commerce_agent.infrastructure.udl.mock_backend import InMemoryCommerceBackend

logger = structlog.get_logger(__name__)


def build_registry(settings: AssistantSettings, cache: Optional[TieredCache] = None) -> ActionRegistry:
    """Registry loaded from the action document, or the built-in catalogue"""

    registry = ActionRegistry(settings.capabilities, cache=cache, default_timeout_ms=settings.dependency_timeout_ms)
    if settings.action_document_path:
        loaded = load_action_document(settings.action_document_path)
        for diagnostic in loaded.diagnostics:
            logger.warning("Action entry rejected", diagnostic=diagnostic)
        registry.reload(loaded.definitions)
    else:
        registry.reload(default_actions())
    return registry


def build_executor(
    settings: AssistantSettings,
    data_access: Optional[Any] = None,
    model: Optional[ModelProvider] = None,
    cache_backend: Optional[DistributedCacheBackend] = None,
    store: Optional[StateStore] = None,
    chat_model: Optional[BaseChatModel] = None,
) -> TurnExecutor:
    """Wire the assistant from settings; collaborators default to in-memory ones

    Pass ``model`` for a ready ModelProvider, or ``chat_model`` for any
    langchain-core chat model supporting bind_tools. Without either the
    rule-based HeuristicModelProvider plans the turns.
    """

    data_access = data_access or InMemoryCommerceBackend()
    if model is None and chat_model is not None:
        model = LangChainModelProvider(chat_model)
    if model is None:
        model = HeuristicModelProvider()
    logger.info("Model provider selected", provider=type(model).__name__)

    cache = TieredCache(
        max_entries=settings.cache_max_entries,
        default_ttl_seconds=settings.cache_default_ttl_seconds,
        backend=cache_backend or InMemoryDistributedCache(),
        l2_timeout_ms=settings.cache_l2_timeout_ms,
    )
    judge = SecurityJudge(
        rate_limiter=TokenBucketRateLimiter(
            capacity=settings.rate_limit_capacity,
            refill_per_second=settings.rate_limit_refill_per_second,
            b2b_capacity=settings.b2b_rate_limit_capacity,
        ),
        semantic_threshold=settings.semantic_threshold,
        judge_timeout_ms=settings.dependency_timeout_ms,
        escalation_cooldown_seconds=settings.escalation_cooldown_seconds,
    )
    graph = CommerceGraph(
        registry=build_registry(settings, cache),
        judge=judge,
        model=model,
        data_access=data_access,
        cache=cache,
        enricher=ContextEnricher(data_access, settings.dependency_timeout_ms),
        window=ContextWindow(settings.model_window_messages, settings.history_limit_messages),
        max_hops=settings.max_hops,
        dependency_timeout_ms=settings.dependency_timeout_ms,
        retry_backoff_ms=settings.retry_backoff_ms,
        model_timeout_ms=settings.model_timeout_ms,
    )
    tracer = TurnTracer(settings.langfuse_public_key, settings.langfuse_secret_key, settings.langfuse_host)

    return TurnExecutor(
        graph=graph,
        store=store or StateStore(),
        tracer=tracer,
        standard_budget_ms=settings.standard_budget_ms,
        b2b_budget_ms=settings.b2b_budget_ms,
        bulk_budget_ms=settings.bulk_budget_ms,
    )
