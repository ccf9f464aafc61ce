"""Template variable resolution for node configuration.

Node configuration values may reference data produced earlier in the run with
``{{...}}`` markers:

- ``{{trigger.path}}``  - trigger payload
- ``{{context.path}}``  - ambient execution context
- ``{{nodeId.path}}``   - output of a node that already executed

Paths are dot-separated keys walked through nested dicts (and lists, by index).
References that cannot be resolved are left verbatim so partially available data
never fails a run.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

TRIGGER_ROOT = "trigger"
CONTEXT_ROOT = "context"

_MISSING = object()


def get_path(data: Any, path: str) -> Any:
    """Walk a dot-separated path through nested dicts/lists.

    Returns the sentinel ``_MISSING`` when any segment is absent or malformed.
    """
    current = data
    for key in path.split("."):
        if key == "":
            return _MISSING
        if isinstance(current, Mapping):
            current = current.get(key, _MISSING)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    """Text form of a resolved value; containers and booleans render as JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, default=str)
    return str(value)


class VariableResolver:
    """
    Resolves ``{{...}}`` markers against trigger data, context and prior outputs.

    A string that consists of exactly one marker resolves to the referenced value
    itself (keeping lists, numbers and dicts intact). Markers embedded in longer
    text are replaced by their string form.
    """

    def __init__(
        self,
        trigger: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
        outputs: Mapping[str, Any] | None = None,
    ):
        self.trigger = trigger or {}
        self.context = context or {}
        self.outputs = outputs if outputs is not None else {}

    def resolve(self, value: Any) -> Any:
        """Recursively resolve markers in strings, lists and dicts."""
        if isinstance(value, str):
            return self.interpolate(value)
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(item) for item in value)
        if isinstance(value, Mapping):
            return {key: self.resolve(item) for key, item in value.items()}
        return value

    def interpolate(self, template: str) -> Any:
        if "{{" not in template:
            return template

        whole = VARIABLE_PATTERN.fullmatch(template)
        if whole:
            resolved = self.lookup(whole.group(1))
            return template if resolved is _MISSING else resolved

        def replace(match: re.Match) -> str:
            resolved = self.lookup(match.group(1))
            if resolved is _MISSING:
                return match.group(0)
            return stringify(resolved)

        return VARIABLE_PATTERN.sub(replace, template)

    def lookup(self, expression: str) -> Any:
        """Resolve one marker expression, or return ``_MISSING``."""
        expr = expression.strip()
        root, sep, path = expr.partition(".")
        if not sep or not path:
            logger.debug(f"Unresolved variable (no path): {expression}")
            return _MISSING

        if root == CONTEXT_ROOT:
            value = get_path(self.context, path)
        elif root == TRIGGER_ROOT:
            value = get_path(self.trigger, path)
        elif root in self.outputs:
            value = get_path(self.outputs[root], path)
        else:
            value = _MISSING

        if value is _MISSING or value is None:
            logger.debug(f"Unresolved variable: {expression}")
            return _MISSING
        return value


def resolve_variables(
    value: Any,
    trigger: Mapping[str, Any] | None = None,
    context: Mapping[str, Any] | None = None,
    outputs: Mapping[str, Any] | None = None,
) -> Any:
    """Resolve all ``{{...}}`` markers in ``value``."""
    return VariableResolver(trigger, context, outputs).resolve(value)
