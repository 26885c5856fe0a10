"""
Parameter handling for prompt templates: defaults, validation and
``{{name}}`` substitution.
"""

import re
from typing import Any, Dict, List

from promptgate.errors import ParameterValidationError
from .registry_loader import PromptConfig

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+)\s*\}\}")


def merge_defaults(prompt: PromptConfig, parameters: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(parameters or {})
    for name, spec in prompt.parameters.properties.items():
        if merged.get(name) is None and spec.default is not None:
            merged[name] = spec.default
    return merged


def _coerce(name: str, kind: str, value: Any, errors: List[str]) -> Any:
    if kind == "string":
        if not isinstance(value, str):
            errors.append(f"Parameter '{name}' must be a string")
        return value
    if kind in ("number", "integer"):
        if isinstance(value, bool):
            errors.append(f"Parameter '{name}' must be a {kind}")
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"Parameter '{name}' must be a {kind}")
            return value
        if kind == "integer":
            if not number.is_integer():
                errors.append(f"Parameter '{name}' must be an integer")
                return value
            return int(number)
        return int(number) if isinstance(value, int) else number
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if value in ("true", "false"):
            return value == "true"
        errors.append(f"Parameter '{name}' must be a boolean")
        return value
    return value


def validate_parameters(prompt: PromptConfig, parameters: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge defaults, check required and typed parameters, and return the
    coerced parameter dict. Raises ParameterValidationError listing every
    problem found.
    """
    if not isinstance(parameters, dict):
        raise ParameterValidationError(["'parameters' must be an object"])

    merged = merge_defaults(prompt, parameters)
    errors: List[str] = []

    for name in prompt.parameters.required:
        if merged.get(name) in (None, ""):
            errors.append(f"Missing required parameter: {name}")

    for name, value in list(merged.items()):
        spec = prompt.parameters.properties.get(name)
        if spec is None or value is None:
            continue
        merged[name] = _coerce(name, spec.type, value, errors)

    if errors:
        raise ParameterValidationError(errors)
    return merged


def render(template: str, parameters: Dict[str, Any]) -> str:
    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in parameters or parameters[key] is None:
            return match.group(0)
        return str(parameters[key])

    return _PLACEHOLDER.sub(substitute, template)


def render_messages(prompt: PromptConfig, parameters: Dict[str, Any]) -> List[Dict[str, str]]:
    return [{"role": m.role, "content": render(m.content, parameters)} for m in prompt.messages]
