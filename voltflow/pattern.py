"""Structural pattern matching for ``and_with`` steps.

A pattern is compared against the current workflow data:

* a mapping matches when every key of the pattern is present in the data and
  its value matches recursively; extra keys in the data are ignored;
* a list or tuple matches a sequence of the same length element by element;
* a class matches instances of that class;
* any other callable is used as a predicate;
* ``ANY`` matches everything and ``one_of(...)`` matches any of its options;
* everything else is compared with ``==``.

Mappings also match attribute-style objects such as pydantic models.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_MISSING = object()


class _Any:
    def __repr__(self) -> str:  # pragma: no cover - simple formatting
        return "ANY"


ANY = _Any()


class OneOf:
    """Matches when any of ``options`` matches."""

    def __init__(self, *options: Any) -> None:
        self.options = options

    def __repr__(self) -> str:  # pragma: no cover - simple formatting
        return f"one_of{self.options!r}"


def one_of(*options: Any) -> OneOf:
    return OneOf(*options)


def _lookup(data: Any, key: Any) -> Any:
    if isinstance(data, Mapping):
        return data.get(key, _MISSING)
    if isinstance(key, str):
        return getattr(data, key, _MISSING)
    return _MISSING


def matches(pattern: Any, data: Any) -> bool:
    """Return ``True`` when ``data`` matches ``pattern``."""
    if pattern is ANY:
        return True
    if isinstance(pattern, OneOf):
        return any(matches(option, data) for option in pattern.options)
    if isinstance(pattern, type):
        return isinstance(data, pattern)
    if isinstance(pattern, Mapping):
        for key, sub_pattern in pattern.items():
            value = _lookup(data, key)
            if value is _MISSING or not matches(sub_pattern, value):
                return False
        return True
    if isinstance(pattern, (list, tuple)):
        if isinstance(data, (str, bytes)) or not isinstance(data, Sequence):
            return False
        if len(pattern) != len(data):
            return False
        return all(matches(p, d) for p, d in zip(pattern, data))
    if callable(pattern):
        return bool(pattern(data))
    return pattern == data
