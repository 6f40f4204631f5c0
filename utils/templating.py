"""
Placeholder substitution for node text.

``{key}`` and ``{{key}}`` are replaced from the call variables. Placeholders
with no matching variable are left exactly as written.
"""
from __future__ import annotations

import re
from typing import Any

from utils.conditions import resolve_variable

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}|\{([\w.\-]+)\}")


def substitute_variables(text: Any, variables: dict[str, Any]) -> Any:
    """Return ``text`` with known placeholders filled in. Non-strings pass through."""
    if not isinstance(text, str) or "{" not in text:
        return text

    def replacer(match: re.Match) -> str:
        key = match.group(1) or match.group(2)
        value = resolve_variable(variables, key)
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(replacer, text)


def substitute_in(obj: Any, variables: dict[str, Any]) -> Any:
    """Recursively substitute inside dicts and lists (request headers and bodies)."""
    if isinstance(obj, str):
        return substitute_variables(obj, variables)
    if isinstance(obj, dict):
        return {k: substitute_in(v, variables) for k, v in obj.items()}
    if isinstance(obj, list):
        return [substitute_in(v, variables) for v in obj]
    return obj
