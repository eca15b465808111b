"""
Partial field updates.

A request that omits a field must leave that column untouched; a request that
sends ``null`` must clear it. ``Patch`` keeps the two cases apart: absent keys
read back as ``UNSET``, present keys keep their value, ``None`` included.
"""
from __future__ import annotations
from typing import Any, Dict, Iterator, Mapping, Tuple


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class Patch:
    """Immutable set of explicitly supplied fields."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None):
        self._values: Dict[str, Any] = dict(values or {})

    def get(self, field: str) -> Any:
        return self._values.get(field, UNSET)

    def is_set(self, field: str) -> bool:
        return field in self._values

    def fields(self) -> list[str]:
        return list(self._values)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(self._values.items())

    def apply(self, target: Any) -> list[str]:
        """Set only the supplied fields on ``target``; returns the fields written."""
        for field, value in self._values.items():
            setattr(target, field, value)
        return list(self._values)

    def __contains__(self, field: object) -> bool:
        return field in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Patch) and other._values == self._values

    def __repr__(self) -> str:
        return f"Patch({self._values!r})"
