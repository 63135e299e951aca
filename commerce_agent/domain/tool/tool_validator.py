from typing import Dict, Any
import copy
import jsonschema
from jsonschema import Draft202012Validator

from commerce_agent.domain.errors import ValidationError, RegistrationError


class ActionParameterValidator:
    """JSON Schema checks for action definitions and tool call parameters"""

    @staticmethod
    def check_schema(name: str, schema: Dict[str, Any]) -> None:
        """Reject parameter schemas that are not valid JSON Schema objects"""

        if not isinstance(schema, dict) or schema.get("type") != "object":
            raise RegistrationError(f"Action '{name}' parameter schema must be an object schema")
        try:
            Draft202012Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise RegistrationError(f"Action '{name}' has an invalid parameter schema: {e.message}")

    @staticmethod
    def validate_params(name: str, schema: Dict[str, Any], params: Any) -> Dict[str, Any]:
        """Strict validation, no coercion; returns params with top-level defaults filled in"""

        if not isinstance(params, dict):
            raise ValidationError(f"Parameters for '{name}' must be an object", details={"path": "$"})

        validator = Draft202012Validator(schema)
        error = jsonschema.exceptions.best_match(validator.iter_errors(params))
        if error is not None:
            parts = list(error.absolute_path)
            if error.validator == "required" and isinstance(error.instance, dict):
                missing = [field for field in error.validator_value if field not in error.instance]
                parts.extend(missing[:1])
            path = "$" + "".join(f"[{part}]" if isinstance(part, int) else f".{part}" for part in parts)
            raise ValidationError(
                f"Invalid parameters for '{name}' at {path}: {error.message}",
                details={"path": path, "validator": error.validator},
            )

        resolved = copy.deepcopy(params)
        for key, prop in schema.get("properties", {}).items():
            if key not in resolved and isinstance(prop, dict) and "default" in prop:
                resolved[key] = copy.deepcopy(prop["default"])
        return resolved
