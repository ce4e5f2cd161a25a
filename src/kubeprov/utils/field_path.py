"""Field path extraction from Kubernetes objects.

Accepts the JSONPath forms ``kubectl -o jsonpath`` users reach for when pulling
one value out of one object, and evaluates them with jmespath::

    $.metadata.uid
    .metadata.labels['app.kubernetes.io/name']
    {.spec.containers[0].image}

Keys that are not plain identifiers (dots, dashes, slashes) need the bracket
form. Projections, filters and functions are rejected: a path selects exactly
one value.
"""

import json
import re
from typing import Any

import jmespath
from jmespath.exceptions import JMESPathError
from jmespath.parser import ParsedResult

from kubeprov.core.exceptions import InvalidPathError

# ['key'] / ["key"] -> ."key" (a jmespath quoted identifier)
_BRACKET_KEY = re.compile(r"""\[\s*(?:'(?P<sq>[^'\\]*)'|"(?P<dq>[^"\\]*)")\s*\]""")

_SINGLE_VALUE_NODES = frozenset(
    {"field", "subexpression", "index_expression", "index", "identity", "current"}
)


def _quote_key(match: re.Match) -> str:
    key = match.group("sq") if match.group("sq") is not None else match.group("dq")
    return "." + json.dumps(key)


def to_expression(path: str) -> str:
    """Translate a JSONPath-style field path into a jmespath expression."""
    expression = path.strip()
    if expression.startswith("{") and expression.endswith("}"):
        expression = expression[1:-1].strip()
    if expression.startswith("$"):
        expression = expression[1:]
    expression = _BRACKET_KEY.sub(_quote_key, expression)
    if expression.startswith("."):
        expression = expression[1:]
    return expression or "@"


def _check_single_value(node: dict[str, Any], path: str) -> None:
    if node["type"] not in _SINGLE_VALUE_NODES:
        raise InvalidPathError(
            f"Field path '{path}' must select a single value ({node['type']} not allowed)",
            resource=path,
        )
    for child in node.get("children", []):
        _check_single_value(child, path)


def parse_path(path: str) -> ParsedResult:
    """Compile a field path.

    Args:
        path: Field path

    Returns:
        Compiled jmespath expression

    Raises:
        InvalidPathError: If the path cannot be parsed or selects more than one value
    """
    if not isinstance(path, str):
        raise InvalidPathError(f"Field path must be a string, got {type(path).__name__}")

    try:
        compiled = jmespath.compile(to_expression(path))
    except JMESPathError as e:
        raise InvalidPathError(f"Cannot parse field path '{path}': {e}", resource=path) from e

    _check_single_value(compiled.parsed, path)
    return compiled


def extract(document: Any, path: str) -> Any:
    """Resolve a field path against a document.

    Args:
        document: Parsed object (dicts and lists)
        path: Field path

    Returns:
        The value at the path

    Raises:
        InvalidPathError: If the path is malformed or does not resolve
    """
    compiled = parse_path(path)
    try:
        value = compiled.search(document)
    except JMESPathError as e:
        raise InvalidPathError(f"Cannot evaluate field path '{path}': {e}", resource=path) from e

    # jmespath yields None for missing keys, out of range indexes and nulls alike
    if value is None:
        raise InvalidPathError(f"Field path '{path}' does not resolve to a value", resource=path)
    return value


def render(value: Any) -> str:
    """Render an extracted value the way kubectl's jsonpath output does."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def extract_string(document: Any, path: str) -> str:
    """Resolve a field path and render the result as a string."""
    return render(extract(document, path))
