from typing import Dict, Any, Optional
import asyncio
import inspect
import time
import structlog

from commerce_agent.domain.cache.cache_keys import cache_key
from commerce_agent.domain.cache.cache_layer import TieredCache
from commerce_agent.domain.errors import ExecutionError, TransientDependencyError
from commerce_agent.domain.models.action import ActionDefinition, ActionContext, ActionResult
from commerce_agent.domain.models.commands import metric
from commerce_agent.infrastructure.observability.logging import assistant_logger, metrics

logger = structlog.get_logger(__name__)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ActionExecutor:
    """Runs one action through pre_process, cache, execute and post_process"""

    def __init__(self, cache: Optional[TieredCache] = None, default_timeout_ms: int = 150):
        self.cache = cache
        self.default_timeout_ms = default_timeout_ms

    async def execute(self, definition: ActionDefinition, params: Dict[str, Any], context: ActionContext) -> ActionResult:
        """Never raises; failures come back on ActionResult.error"""

        start = time.perf_counter()
        try:
            result = await self._run(definition, params, context)
        except Exception as e:
            error = ExecutionError.from_exception(e)
            if error.error_type == "InternalError":
                logger.error("Action raised unexpectedly", action=definition.name, error=str(e), exc_info=True)
            result = ActionResult.failure(definition.name, error)

        result.duration_ms = round((time.perf_counter() - start) * 1000, 3)
        metrics.record_latency("action." + definition.name, result.duration_ms, tags={"cached": str(result.cached)})
        assistant_logger.log_action_execution(
            action_name=definition.name,
            session_id=context.session_id,
            mode=context.mode.value,
            input_data=params,
            duration_ms=result.duration_ms,
            success=result.success,
            cached=result.cached,
            error=result.error.error_type if result.error else None,
        )
        return result

    async def _run(self, definition: ActionDefinition, params: Dict[str, Any], context: ActionContext) -> ActionResult:
        if definition.pre_process is not None:
            params = await _maybe_await(definition.pre_process(params, context))

        policy = definition.cache_policy
        key = None
        if policy is not None and self.cache is not None:
            key_fn = policy.key_fn or (lambda p, mode: cache_key(definition.name, p, mode))
            key = key_fn(params, context.mode.value)
            cached = await self.cache.get(key)
            if cached is not None:
                result = ActionResult.model_validate(cached)
                result.cached = True
                result.commands.append(metric("cache_hit", label=definition.name))
                return result

        timeout_ms = definition.timeout_ms or self.default_timeout_ms
        try:
            result = await asyncio.wait_for(definition.execute(params, context), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TransientDependencyError(
                f"Action '{definition.name}' timed out after {timeout_ms}ms",
                details={"timeout_ms": timeout_ms},
            )

        if definition.post_process is not None:
            result = await _maybe_await(definition.post_process(result, context))

        if key is not None and result.success:
            tags = policy.tags_fn(params, context) if policy.tags_fn else []
            await self.cache.set(key, result.model_dump(mode="json"), ttl_seconds=policy.ttl_seconds, tags=tags)
            logger.debug("Action result cached", action=definition.name, key=key, tags=tags)

        result.commands.append(metric("tool_execution", label=definition.name))
        if key is not None:
            result.commands.append(metric("cache_miss", label=definition.name))
        return result
