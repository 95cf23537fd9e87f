"""Variable resolution for message text and request templates.

Templates use ``{{variable}}`` syntax where the variable is a dotted path into
the execution context:

- ``{{first_name}}`` - top-level context key
- ``{{order.items.0.sku}}`` - nested dict keys and list indexes
- ``{{$execution.id}}`` / ``{{$contact_id}}`` / ``{{$conversation_id}}`` - run identifiers

Unresolvable variables are left in place so a half-filled message is visible
in the conversation instead of silently dropping text.
"""

import json
import re
from typing import Any, Dict, List, Optional

from jsonpath_ng import parse as jsonpath_parse

from chatflow.utils.errors import ConfigurationError, VariableResolutionError

_MISSING = object()


def get_path(obj: Any, path: str, default: Any = None) -> Any:
    """Get nested value using dot notation.

    Supports dictionary keys, list indexes and object attributes.

    Args:
        obj: Object to extract from
        path: Dot-separated path (e.g., "user.name" or "items.0")
        default: Returned when any segment is missing

    Returns:
        Value at path or default
    """
    if not path:
        return obj

    current = obj
    for key in path.split("."):
        if current is None:
            return default

        if isinstance(current, dict):
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return default
        elif hasattr(current, key):
            current = getattr(current, key)
        else:
            return default

    return current


def has_path(obj: Any, path: str) -> bool:
    """Check whether a dotted path resolves (a stored None counts as present)."""
    return get_path(obj, path, _MISSING) is not _MISSING


def extract_jsonpath(data: Any, expression: str) -> Any:
    """Extract a value from a response body with a JSONPath expression.

    A plain dotted path (no leading ``$``) is accepted as well.

    Returns:
        The single match, a list for multiple matches, or None
    """
    if not expression.startswith("$"):
        return get_path(data, expression)

    try:
        matches = jsonpath_parse(expression).find(data)
    except Exception as e:
        raise ConfigurationError(f"Invalid JSONPath '{expression}': {e}")

    if not matches:
        return None
    if len(matches) == 1:
        return matches[0].value
    return [m.value for m in matches]


def validate_jsonpath(expression: str) -> None:
    """Raise ConfigurationError if a JSONPath expression does not parse."""
    if not expression.startswith("$"):
        return
    try:
        jsonpath_parse(expression)
    except Exception as e:
        raise ConfigurationError(f"Invalid JSONPath '{expression}': {e}")


class VariableResolver:
    """Resolve {{variable}} references against an execution context.

    Example:
        >>> resolver = VariableResolver({"name": "Ada", "order": {"id": 7}})
        >>> resolver.resolve("Hi {{name}}, order #{{order.id}} shipped")
        'Hi Ada, order #7 shipped'
    """

    PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

    def __init__(self, context: Dict[str, Any], builtins: Optional[Dict[str, Any]] = None):
        """Initialize resolver.

        Args:
            context: Execution context map
            builtins: Values reachable as ``$name`` (execution id, contact id, ...)
        """
        self.context = context
        self.builtins = builtins or {}

    def lookup(self, variable: str) -> Any:
        """Resolve a single variable reference.

        Raises:
            VariableResolutionError: If the path does not exist
        """
        if variable.startswith("$"):
            head, _, rest = variable[1:].partition(".")
            if head not in self.builtins:
                raise VariableResolutionError(variable, "unknown builtin")
            value = get_path(self.builtins[head], rest, _MISSING) if rest else self.builtins[head]
        else:
            value = get_path(self.context, variable, _MISSING)

        if value is _MISSING:
            raise VariableResolutionError(variable, "not present in context")
        return value

    def resolve(self, template: Optional[str]) -> Optional[str]:
        """Replace all {{variables}} with their values."""
        if not template or "{{" not in template:
            return template

        def replacer(match: "re.Match[str]") -> str:
            try:
                value = self.lookup(match.group(1))
            except VariableResolutionError:
                return match.group(0)
            if value is None:
                return ""
            if isinstance(value, (dict, list)):
                return json.dumps(value, default=str)
            return str(value)

        return self.PATTERN.sub(replacer, template)

    def resolve_value(self, value: Any) -> Any:
        """Resolve variables in a string, dict or list, recursively.

        A string consisting of exactly one ``{{variable}}`` resolves to the raw
        value so numbers and objects keep their type in request bodies.
        """
        if isinstance(value, str):
            match = self.PATTERN.fullmatch(value.strip())
            if match:
                try:
                    return self.lookup(match.group(1))
                except VariableResolutionError:
                    return value
            return self.resolve(value)
        if isinstance(value, dict):
            return {key: self.resolve_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        return value

    def referenced(self, template: str) -> List[str]:
        """List the variable names referenced in a template."""
        return [m.group(1) for m in self.PATTERN.finditer(template or "")]
