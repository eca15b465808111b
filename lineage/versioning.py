"""Optimistic version checks for profiles and marriages."""
from __future__ import annotations
from typing import Any, Optional

from .errors import VersionConflict


def check_version(record: Any, expected: Optional[int]) -> None:
    """
    Raise VersionConflict unless ``record.version`` equals ``expected``.

    A missing expected version is a conflict too: the client has to say which
    version it edited.
    """
    actual = getattr(record, "version", None)
    if expected is None or actual != expected:
        raise VersionConflict(
            f"Version conflict on {type(record).__name__} {getattr(record, 'id', None)}: "
            f"expected {expected}, found {actual}",
            record_id=getattr(record, "id", None),
            expected=expected,
            actual=actual,
        )
