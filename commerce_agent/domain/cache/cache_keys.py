from typing import Any, Dict
import hashlib
import json


def normalize_params(value: Any) -> Any:
    """Canonical form used for cache keys: case, whitespace and key order insensitive"""

    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, dict):
        return {
            str(key): normalize_params(item)
            for key, item in sorted(value.items(), key=lambda kv: str(kv[0]))
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        # List order is meaningful
        return [normalize_params(item) for item in value]
    return value


def cache_key(action: str, params: Dict[str, Any], mode: str) -> str:
    """Deterministic cache key for an action invocation"""

    canonical = json.dumps(normalize_params(params), sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{action}:{mode}:{digest}"
