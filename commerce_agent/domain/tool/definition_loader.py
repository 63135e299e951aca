from typing import Dict, Any, List, Optional, Union
from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field
import pydantic
import json
import yaml
import structlog

from commerce_agent.domain.actions import HANDLERS
from commerce_agent.domain.errors import ConfigurationError
from commerce_agent.domain.models.action import ActionDefinition, CachePolicy
from commerce_agent.domain.models.conversation_state import Mode

logger = structlog.get_logger(__name__)


class ActionConfig(BaseModel):
    """One entry of an action document"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    handler: str
    description: Optional[str] = None
    modes: Optional[List[Mode]] = None
    permissions: Optional[List[str]] = None
    category: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    cache_ttl_seconds: Optional[float] = Field(default=None, ge=0)
    enabled: bool = True


class LoadResult(BaseModel):
    """Definitions built from a document plus per-entry diagnostics"""
    definitions: List[ActionDefinition] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics


def _read_document(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read action document {path}: {e}")

    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            return yaml.safe_load(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse action document {path}: {e}")


def build_definition(config: ActionConfig) -> ActionDefinition:
    """Bind a validated entry to its handler and apply overrides"""

    factory = HANDLERS.get(config.handler)
    if factory is None:
        raise ConfigurationError(f"Unknown action handler '{config.handler}'")

    base = factory()
    update: Dict[str, Any] = {"name": config.name}
    if config.description is not None:
        update["description"] = config.description
    if config.modes is not None:
        update["modes"] = [m for m in config.modes if m != Mode.UNKNOWN]
    if config.permissions is not None:
        update["permissions"] = list(config.permissions)
    if config.category is not None:
        update["category"] = config.category
    if config.timeout_ms is not None:
        update["timeout_ms"] = config.timeout_ms
    if config.cache_ttl_seconds is not None:
        if config.cache_ttl_seconds == 0:
            update["cache_policy"] = None
        elif base.cache_policy is not None:
            update["cache_policy"] = base.cache_policy.model_copy(update={"ttl_seconds": config.cache_ttl_seconds})
        else:
            update["cache_policy"] = CachePolicy(ttl_seconds=config.cache_ttl_seconds)
    return base.model_copy(update=update)


def load_action_document(path: Union[str, Path]) -> LoadResult:
    """Load an action document (JSON or YAML)

    Malformed entries are skipped and reported; an unreadable document raises
    ConfigurationError.
    """

    path = Path(path)
    document = _read_document(path)
    if isinstance(document, dict):
        document = document.get("actions")
    if not isinstance(document, list):
        raise ConfigurationError(f"Action document {path} must contain a list of actions")

    result = LoadResult()
    seen = set()
    for index, entry in enumerate(document):
        try:
            config = ActionConfig.model_validate(entry)
        except pydantic.ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "entry" for err in e.errors())
            result.diagnostics.append(f"actions[{index}]: invalid entry ({fields})")
            continue

        if not config.enabled:
            continue
        if config.handler not in HANDLERS:
            result.diagnostics.append(f"actions[{index}]: unknown handler '{config.handler}'")
            continue
        if config.name in seen:
            result.diagnostics.append(f"actions[{index}]: duplicate action name '{config.name}'")
            continue

        seen.add(config.name)
        result.definitions.append(build_definition(config))

    for diagnostic in result.diagnostics:
        logger.warning("Action entry rejected", path=str(path), diagnostic=diagnostic)
    logger.info("Action document loaded", path=str(path), actions=len(result.definitions), rejected=len(result.diagnostics))
    return result
