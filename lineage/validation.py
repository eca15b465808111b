"""
Field domain checks for profile writes.

These mirror the table CHECK constraints and run before anything is written,
so one bad value rejects the whole batch.
"""
from __future__ import annotations
import re
from typing import Any, Callable, Dict, Optional

from .errors import ValidationFailed
from .models import GENDERS, LIFE_STATUSES, VISIBILITIES
from .partial import Patch

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_TEXT = 255
MAX_BIO = 5000

CREATE_REQUIRED = ("name", "gender")

TEXT_FIELDS = (
    "kunya",
    "nickname",
    "birth_place",
    "current_residence",
    "occupation",
    "education",
    "phone",
    "photo_url",
    "family_origin",
)

CREATE_FIELDS = frozenset(
    {
        "name",
        "gender",
        "status",
        "sibling_order",
        "bio",
        "email",
        "dob_data",
        "dod_data",
        "profile_visibility",
        *TEXT_FIELDS,
    }
)

# A child hangs off its parent through father_id (or mother_id under a
# mother), so only the other link may be re-pointed by an update.
UPDATE_FIELDS = CREATE_FIELDS | {"mother_id"}


def _fail(field: str, index: Optional[int], detail: str) -> None:
    raise ValidationFailed(detail, field=field, op_index=index)


def _check_name(value: Any, index: Optional[int]) -> None:
    if not isinstance(value, str) or not value.strip():
        _fail("name", index, "name is required")
    if len(value) > MAX_TEXT:
        _fail("name", index, "name too long")


def _choice(field: str, allowed: tuple) -> Callable[[Any, Optional[int]], None]:
    def check(value: Any, index: Optional[int]) -> None:
        if value not in allowed:
            _fail(field, index, f"{field} must be one of {', '.join(allowed)}")
    return check


def _check_sibling_order(value: Any, index: Optional[int]) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        _fail("sibling_order", index, "sibling_order must be a non-negative integer")


def _optional_text(field: str, limit: int = MAX_TEXT) -> Callable[[Any, Optional[int]], None]:
    def check(value: Any, index: Optional[int]) -> None:
        if value is None:
            return
        if not isinstance(value, str) or len(value) > limit:
            _fail(field, index, f"{field} must be text up to {limit} characters")
    return check


def _check_email(value: Any, index: Optional[int]) -> None:
    if value is None:
        return
    if not isinstance(value, str) or not EMAIL_RE.match(value):
        _fail("email", index, "invalid email")


def _optional_object(field: str) -> Callable[[Any, Optional[int]], None]:
    def check(value: Any, index: Optional[int]) -> None:
        if value is not None and not isinstance(value, dict):
            _fail(field, index, f"{field} must be an object")
    return check


def _optional_id(field: str) -> Callable[[Any, Optional[int]], None]:
    def check(value: Any, index: Optional[int]) -> None:
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            _fail(field, index, f"{field} must be a profile id")
    return check


CHECKS: Dict[str, Callable[[Any, Optional[int]], None]] = {
    "name": _check_name,
    "gender": _choice("gender", GENDERS),
    "status": _choice("status", LIFE_STATUSES),
    "profile_visibility": _choice("profile_visibility", VISIBILITIES),
    "sibling_order": _check_sibling_order,
    "bio": _optional_text("bio", MAX_BIO),
    "email": _check_email,
    "dob_data": _optional_object("dob_data"),
    "dod_data": _optional_object("dod_data"),
    "mother_id": _optional_id("mother_id"),
    **{field: _optional_text(field) for field in TEXT_FIELDS},
}


def validate_patch(patch: Patch, index: Optional[int] = None, *, creating: bool = False) -> None:
    """Check every supplied value; creates must also carry the identity fields."""
    allowed = CREATE_FIELDS if creating else UPDATE_FIELDS
    if creating:
        for field in CREATE_REQUIRED:
            if not patch.is_set(field):
                _fail(field, index, f"{field} is required for new profiles")
    for field, value in patch.items():
        if field not in allowed:
            _fail(field, index, f"unknown field {field}")
        CHECKS[field](value, index)
