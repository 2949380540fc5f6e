# /chatflow/workflows/templates.py

"""
Placeholder resolution for node configs.

Both ``{name}`` and ``{{name}}`` are recognized; names may be dotted paths into
nested values (``{{contact.phone_number}}``). Lookup is scope-ordered:
session variables, then persistent variables, then well-known context fields.
Unresolved placeholders are left in place so authors can spot them.
"""

import re
from typing import Any, Mapping, Tuple

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}|\{([A-Za-z_][\w.\-]*)\}")
_MISSING = object()


def resolve_path(root: Any, parts) -> Any:
    """Walks dict keys, attributes and list indexes. Returns _MISSING on any miss."""
    current = root
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def lookup(name: str, scopes: Tuple[Mapping[str, Any], ...]) -> Tuple[bool, Any]:
    """
    Finds a (possibly dotted) name in the first scope that has it.

    A full-name hit wins over a dotted path, so a variable literally named
    "order.id" is still reachable.
    """
    for scope in scopes:
        if name in scope:
            return True, scope[name]
    if "." in name:
        root, *rest = name.split(".")
        for scope in scopes:
            if root in scope:
                value = resolve_path(scope[root], rest)
                if value is not _MISSING:
                    return True, value
    return False, None


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: Any, scopes: Tuple[Mapping[str, Any], ...]) -> str:
    """Renders every placeholder in a string template as text."""
    if not isinstance(template, str):
        return _to_text(template)

    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        found, value = lookup(name, scopes)
        return _to_text(value) if found else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def resolve_value(value: Any, scopes: Tuple[Mapping[str, Any], ...]) -> Any:
    """
    Resolves placeholders while keeping types where possible.

    A string that is exactly one placeholder yields the raw value (a number
    stays a number, a dict stays a dict). Dicts and lists are resolved
    recursively; anything else is returned unchanged.
    """
    if isinstance(value, str):
        match = _PLACEHOLDER.fullmatch(value.strip())
        if match:
            found, raw = lookup(match.group(1) or match.group(2), scopes)
            return raw if found else value
        return render(value, scopes)
    if isinstance(value, dict):
        return {key: resolve_value(item, scopes) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scopes) for item in value]
    return value
