"""
Variable Store: the per-conversation key/value bag flow nodes read and write.

Values are scalars (str / int / float / bool). There is no delete: a key,
once written, stays for the life of the conversation. Unset and empty
string mean the same thing to templating and condition evaluation.

Name-like fields fan out to every spelling the builder's templates use,
so a lead captured as ``full_name`` still renders in ``Hi {first_name}``.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional, Union

Scalar = Union[bool, int, float, str]

NAME_ALIASES: tuple[str, ...] = ("user_name", "first_name", "name", "contact_name")


def is_name_like(field_name: str) -> bool:
    """True for fields whose value should be copied to all name aliases."""
    field_name = (field_name or "").lower()
    return "name" in field_name or field_name in ("first_name", "user_name")


def format_scalar(value: Any) -> str:
    """Render a stored value the way templates and comparisons see it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class VariableStore:
    """Thin wrapper over a dict with alias-aware writes."""

    def __init__(self, initial: Optional[dict[str, Scalar]] = None):
        self._data: dict[str, Scalar] = dict(initial or {})

    def get(self, key: str) -> Optional[Scalar]:
        return self._data.get(key)

    def get_text(self, key: str) -> str:
        return format_scalar(self._data.get(key))

    def has_value(self, key: str) -> bool:
        return self.get_text(key) != ""

    def set(self, key: str, value: Scalar) -> None:
        self._data[key] = value

    def set_with_aliases(self, fields: Iterable[str], value: Scalar) -> list[str]:
        """
        Write ``value`` under each field; name-like fields also write every
        alias. Returns the keys actually written.
        """
        written: list[str] = []
        for f in fields:
            keys = [f]
            if is_name_like(f):
                keys += [a for a in NAME_ALIASES if a != f]
            for k in keys:
                self._data[k] = value
                if k not in written:
                    written.append(k)
        return written

    def update(self, values: dict[str, Scalar]) -> None:
        self._data.update(values)

    def copy(self) -> "VariableStore":
        return VariableStore(self._data)

    def as_dict(self) -> dict[str, Scalar]:
        return dict(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
