from typing import Dict, List, Any, Optional, Iterable, Mapping
from types import MappingProxyType
import threading
import structlog

from commerce_agent.domain.cache.cache_layer import TieredCache
from commerce_agent.domain.errors import (
    ActionNotFound, CapabilityUnavailable, ExecutionError, RegistrationError,
)
from commerce_agent.domain.models.action import ActionDefinition, ActionContext, ActionResult, ToolSpec
from commerce_agent.domain.models.conversation_state import Mode
from commerce_agent.domain.tool.tool_executor import ActionExecutor
from commerce_agent.domain.tool.tool_validator import ActionParameterValidator

logger = structlog.get_logger(__name__)


class ActionRegistry:
    """Closed registry of commerce actions

    Readers see an immutable snapshot; writers build a new table and swap
    the reference under a lock.
    """

    def __init__(
        self,
        capabilities: Iterable[str],
        cache: Optional[TieredCache] = None,
        default_timeout_ms: int = 150,
    ):
        self.capabilities = frozenset(str(getattr(c, "value", c)) for c in capabilities)
        self.validator = ActionParameterValidator()
        self.executor = ActionExecutor(cache=cache, default_timeout_ms=default_timeout_ms)
        self._actions: Mapping[str, ActionDefinition] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self.version = 0

    def _check(self, definition: ActionDefinition) -> None:
        self.validator.check_schema(definition.name, definition.parameter_schema)

        missing = [c.value for c in definition.required_capabilities if c.value not in self.capabilities]
        if missing:
            raise CapabilityUnavailable(
                f"Action '{definition.name}' requires unavailable capabilities: {', '.join(missing)}",
                details={"missing": missing},
            )

    @staticmethod
    def _check_collision(table: Mapping[str, ActionDefinition], definition: ActionDefinition) -> None:
        existing = table.get(definition.name)
        if existing is not None and existing.parameter_schema != definition.parameter_schema:
            raise RegistrationError(
                f"Action '{definition.name}' is already registered with a different parameter schema"
            )

    def register(self, definition: ActionDefinition) -> None:
        """Register or replace (same schema) a single action"""

        self._check(definition)
        with self._write_lock:
            self._check_collision(self._actions, definition)
            table = dict(self._actions)
            table[definition.name] = definition
            self._swap(table)

        logger.info("Action registered", action=definition.name, version=self.version)

    def reload(self, definitions: Iterable[ActionDefinition]) -> None:
        """Replace the whole table atomically"""

        table: Dict[str, ActionDefinition] = {}
        for definition in definitions:
            self._check(definition)
            self._check_collision(table, definition)
            table[definition.name] = definition

        with self._write_lock:
            self._swap(table)

        logger.info("Action registry reloaded", actions=sorted(table), version=self.version)

    def _swap(self, table: Dict[str, ActionDefinition]) -> None:
        self._actions = MappingProxyType(table)
        self.version += 1

    def get(self, name: str) -> ActionDefinition:
        definition = self._actions.get(name)
        if definition is None:
            raise ActionNotFound(f"Unknown action '{name}'", details={"action": name})
        return definition

    def names(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def resolve(self, name: str, raw_params: Any) -> Dict[str, Any]:
        """Validate raw tool arguments against the action schema"""

        definition = self.get(name)
        return self.validator.validate_params(name, definition.parameter_schema, raw_params)

    async def invoke(self, name: str, params: Dict[str, Any], context: ActionContext) -> ActionResult:
        snapshot = self._actions
        definition = snapshot.get(name)
        if definition is None:
            error = ActionNotFound(f"Unknown action '{name}'")
            return ActionResult.failure(name, ExecutionError.from_exception(error))
        return await self.executor.execute(definition, params, context)

    def list_available(self, mode: Mode, permissions: Optional[Iterable[str]] = None) -> List[ToolSpec]:
        """Tool menu for a mode and permission set"""

        granted = set(permissions or [])
        return [
            ToolSpec(name=d.name, description=d.description, parameters=d.parameter_schema)
            for d in sorted(self._actions.values(), key=lambda d: d.name)
            if d.applies_to(mode)
            and set(d.permissions) <= granted
            and all(c.value in self.capabilities for c in d.required_capabilities)
        ]
