"""
Template substitution for node content.

Supports both ``{key}`` and ``{{key}}`` placeholders. A placeholder is
replaced only when the variable holds a non-empty value; unknown or empty
placeholders are left verbatim so authors can see what is missing.

The four name aliases resolve as a group: ``{first_name}`` prefers its own
value and otherwise falls back to the first non-empty alias.

Substitution is a single regex pass, so text inserted from a variable is
never re-scanned for placeholders.
"""
from __future__ import annotations

import re
from typing import Mapping, Union

from core.variables import NAME_ALIASES, VariableStore, format_scalar

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}|\{([^{}]+)\}")


def _lookup(key: str, values: Mapping) -> str:
    text = format_scalar(values.get(key))
    if text or key not in NAME_ALIASES:
        return text
    for alias in NAME_ALIASES:
        text = format_scalar(values.get(alias))
        if text:
            return text
    return ""


def substitute(text: str, variables: Union[VariableStore, Mapping]) -> str:
    """Replace placeholders in ``text`` with values from ``variables``."""
    if not text:
        return text or ""
    values = variables.as_dict() if isinstance(variables, VariableStore) else variables

    def replacer(match: re.Match) -> str:
        key = (match.group(1) or match.group(2)).strip()
        value = _lookup(key, values)
        return value if value else match.group(0)

    return _PLACEHOLDER.sub(replacer, text)


def substitute_all(items: list[str], variables: Union[VariableStore, Mapping]) -> list[str]:
    return [substitute(i, variables) for i in items]
