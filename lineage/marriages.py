"""
Marriage integrity.

A spouse without an HID married into the family from outside ("munasib").
For every such spouse the marriage's ``munasib`` marker and the spouse's
``family_origin`` must both be set and name the same family. Spellings of
Arabic family names drift (hamza forms, taa marbuta, the article), so the
two are compared after normalization with a fuzzy ratio.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
import logging
import re
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .audit import AuditRecorder
from .errors import LineageError, NotFound, PermissionDenied, ValidationFailed, VersionConflict
from .locking import RowLockManager, default_lock_manager
from .logging_config import log_info
from .models import AuditAction, Marriage, Person, MARRIAGE_STATUSES
from .permissions import can_edit, resolve_permission

logger = logging.getLogger(__name__)

GROUP_MARRIAGE_CREATE = "marriage_create"
MARRIAGE_DESCRIPTION = "إضافة زواج"

# Minimum rapidfuzz ratio (0-100) for two family names to count as the same
MUNASIB_MATCH_THRESHOLD = 90

_DIACRITICS = re.compile("[\u064B-\u0652\u0640]")
_ALEF_FORMS = str.maketrans({"أ": "ا", "إ": "ا", "آ": "ا", "ٱ": "ا", "ة": "ه", "ى": "ي"})


def normalize_family_name(name: Optional[str]) -> str:
    if not name:
        return ""
    text = _DIACRITICS.sub("", name).translate(_ALEF_FORMS).casefold()
    words = []
    for word in text.split():
        if word.startswith("ال") and len(word) > 3:
            word = word[2:]
        words.append(word)
    return " ".join(words)


def family_names_match(a: Optional[str], b: Optional[str]) -> bool:
    left, right = normalize_family_name(a), normalize_family_name(b)
    if not left or not right:
        return False
    return left == right or fuzz.ratio(left, right) >= MUNASIB_MATCH_THRESHOLD


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationFailed(f"{field_name} must be an ISO date", field=field_name) from None


@dataclass
class MarriageResult:
    marriage_id: int
    version: int
    operation_group_id: str
    munasib: Optional[str]
    filled_family_origin: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "marriage_id": self.marriage_id,
            "version": self.version,
            "operation_group_id": self.operation_group_id,
            "munasib": self.munasib,
            "filled_family_origin": self.filled_family_origin,
        }


def _live(session: Session, person_id: Any, field_name: str) -> Person:
    if isinstance(person_id, bool) or not isinstance(person_id, int):
        raise ValidationFailed(f"{field_name} must be a profile id", field=field_name)
    person = session.get(Person, person_id)
    if person is None or person.deleted_at is not None:
        raise NotFound(f"profile {person_id}")
    return person


def _has_active_marriage(session: Session, husband_id: int, wife_id: int) -> bool:
    stmt = select(Marriage.id).where(
        Marriage.husband_id == husband_id,
        Marriage.wife_id == wife_id,
        Marriage.status == "married",
        Marriage.deleted_at.is_(None),
    ).limit(1)
    return session.execute(stmt).first() is not None


def create_marriage(
    session: Session,
    actor_id: Optional[int],
    husband_id: Any,
    wife_id: Any,
    munasib: Optional[str] = None,
    status: str = "married",
    start_date: Any = None,
    end_date: Any = None,
    *,
    locks: RowLockManager | None = None,
    now: datetime | None = None,
) -> MarriageResult:
    """
    Create a marriage and keep the munasib marker consistent.

    A spouse from outside the family missing ``family_origin`` gets it filled
    from ``munasib`` (and vice versa); both missing, or naming different
    families, is rejected. The marriage and any filled origin are audited as
    one operation group.
    """
    locks = locks or default_lock_manager
    now = now or datetime.utcnow()
    munasib = munasib.strip() if isinstance(munasib, str) and munasib.strip() else None
    try:
        if status not in MARRIAGE_STATUSES:
            raise ValidationFailed(f"status must be one of {', '.join(MARRIAGE_STATUSES)}", field="status")
        start = _parse_date(start_date, "start_date")
        end = _parse_date(end_date, "end_date")
        if start and end and start > end:
            raise ValidationFailed("start_date is after end_date", field="end_date")
        if husband_id == wife_id:
            raise ValidationFailed("a profile cannot marry itself", field="wife_id")

        husband = _live(session, husband_id, "husband_id")
        wife = _live(session, wife_id, "wife_id")
        if husband.gender != "male":
            raise ValidationFailed("husband must be male", field="husband_id")
        if wife.gender != "female":
            raise ValidationFailed("wife must be female", field="wife_id")

        internal = [p for p in (husband, wife) if p.hid]
        external = [p for p in (husband, wife) if not p.hid]
        if not internal:
            raise ValidationFailed("at least one spouse must belong to the family", field="husband_id")
        if munasib and not external:
            raise ValidationFailed("munasib applies only to spouses from outside the family", field="munasib")

        anchor = internal[0]
        locks.lock_aggregate(session, anchor.id, [p.id for p in (husband, wife) if p.id != anchor.id])
        for person in (husband, wife):
            session.refresh(person)
            if person.deleted_at is not None:
                raise NotFound(f"profile {person.id}")

        levels = [resolve_permission(session, actor_id, p.id) for p in internal]
        if not any(can_edit(level) for level in levels):
            raise PermissionDenied(level=levels[0].value)

        if _has_active_marriage(session, husband.id, wife.id):
            raise ValidationFailed("these profiles are already married", field="wife_id")

        to_fill: List[Person] = []
        for spouse in external:
            origin = spouse.family_origin
            if not munasib and not origin:
                raise ValidationFailed("family name of the spouse from outside the family is required", field="munasib")
            if not munasib:
                munasib = origin
            elif not origin:
                to_fill.append(spouse)
            elif not family_names_match(munasib, origin):
                raise ValidationFailed(f"munasib {munasib!r} does not match family origin {origin!r}", field="munasib")

        recorder = AuditRecorder(session, actor_id)
        group = recorder.open_group(anchor.id, GROUP_MARRIAGE_CREATE, 1 + len(to_fill), MARRIAGE_DESCRIPTION)

        marriage = Marriage(
            husband_id=husband.id,
            wife_id=wife.id,
            munasib=munasib,
            status=status,
            start_date=start,
            end_date=end,
        )
        session.add(marriage)
        recorder.record_create(marriage)

        for spouse in to_fill:
            with recorder.mutation(AuditAction.UPDATE, spouse):
                spouse.family_origin = munasib
                spouse.updated_at = now

        session.flush()
        result = MarriageResult(
            marriage_id=marriage.id,
            version=marriage.version,
            operation_group_id=group.id,
            munasib=munasib,
            filled_family_origin=[p.id for p in to_fill],
        )
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise VersionConflict("spouse changed while the marriage was saved") from exc
    except IntegrityError as exc:
        session.rollback()
        raise ValidationFailed(f"constraint violation: {exc.orig}", field="") from exc
    except LineageError as exc:
        session.rollback()
        logger.warning("Marriage rejected", extra={"husband_id": husband_id, "wife_id": wife_id, "error_code": exc.code})
        raise
    except Exception:
        session.rollback()
        raise

    log_info(
        logger,
        "Marriage created",
        {"marriage_id": result.marriage_id, "operation_group_id": result.operation_group_id},
    )
    return result


def find_inconsistent_marriages(session: Session) -> List[Dict[str, Any]]:
    """Live marriages that break the munasib rule, one row per offending spouse."""
    problems: List[Dict[str, Any]] = []
    marriages = session.execute(
        select(Marriage).where(Marriage.deleted_at.is_(None)).order_by(Marriage.id)
    ).scalars().all()
    for marriage in marriages:
        spouses = [p for p in (marriage.husband, marriage.wife) if p is not None]
        external = [p for p in spouses if not p.hid]
        if not external and marriage.munasib:
            problems.append(_problem(marriage, None, "munasib-on-internal"))
        for spouse in external:
            if not marriage.munasib and not spouse.family_origin:
                problems.append(_problem(marriage, spouse, "missing-munasib"))
            elif not marriage.munasib:
                problems.append(_problem(marriage, spouse, "missing-munasib-marker"))
            elif not spouse.family_origin:
                problems.append(_problem(marriage, spouse, "missing-family-origin"))
            elif not family_names_match(marriage.munasib, spouse.family_origin):
                problems.append(_problem(marriage, spouse, "origin-mismatch"))
    return problems


def _problem(marriage: Marriage, spouse: Optional[Person], problem: str) -> Dict[str, Any]:
    return {
        "marriage_id": marriage.id,
        "husband_id": marriage.husband_id,
        "wife_id": marriage.wife_id,
        "spouse_id": spouse.id if spouse else None,
        "munasib": marriage.munasib,
        "family_origin": spouse.family_origin if spouse else None,
        "problem": problem,
    }
