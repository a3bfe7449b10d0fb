"""Template resolution for ``{{path.to.value}}`` placeholders.

Placeholders are substituted by dotted-path lookup into a context mapping.
Paths that do not resolve leave the placeholder in place, which the
condition coercion below treats as false.
"""

import json
import re
from typing import Any, Callable, Mapping, Tuple

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")

_FALSY_STRINGS = {"", "0", "false"}

_MISSING = object()


def lookup_path(context: Any, path: str) -> Any:
    """Follow a dotted path through mappings and sequences.

    Returns the module-level ``_MISSING`` sentinel when any segment is absent.
    """
    current = context
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    """Render a resolved value for insertion into a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def substitute(
    template: str,
    context: Mapping[str, Any],
    render: Callable[[Any], str] = stringify
) -> Tuple[str, bool]:
    """
    Replace every placeholder in ``template``.

    Returns:
        The substituted string, and whether any path failed to resolve.
        Placeholders that fail are left in place.
    """
    missing = False

    def replace(match: "re.Match[str]") -> str:
        nonlocal missing
        value = lookup_path(context, match.group(1))
        if value is _MISSING:
            missing = True
            return match.group(0)
        return render(value)

    return PLACEHOLDER_PATTERN.sub(replace, template), missing


def resolve_string(template: str, context: Mapping[str, Any]) -> str:
    return substitute(template, context)[0]


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    """
    Recursively resolve placeholders in strings, lists and mappings.

    Non-string scalars are returned as-is, and a string without
    placeholders is returned unchanged.
    """
    if isinstance(value, str):
        if "{{" not in value:
            return value
        return resolve_string(value, context)
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_value(item, context) for item in value)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, context) for key, item in value.items()}
    return value


def is_truthy(value: Any) -> bool:
    """Coerce a resolved value to a boolean.

    Strings are false when blank, ``"0"`` or ``"false"``; any other string
    is true, whatever text it holds.
    """
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def evaluate_condition(condition: Any, context: Mapping[str, Any]) -> bool:
    """
    Resolve ``condition`` against ``context`` and coerce the result to a boolean.

    A string condition with a placeholder that does not resolve is false.
    Only the lookups decide this: resolved data that itself contains
    ``{{...}}`` text does not count as unresolved.
    """
    if isinstance(condition, str):
        resolved, missing = substitute(condition, context)
        return not missing and is_truthy(resolved)
    return is_truthy(resolve_value(condition, context))
