"""
Family permission resolution.

Resolves the permission level an actor holds over a target profile from the
current relationship and role state. Read-only: nothing here writes. Anything
that cannot be resolved (missing or deleted profiles, broken links) falls to
the most restrictive level.
"""
from __future__ import annotations
from typing import Optional, Set
import enum

from sqlalchemy import select, or_, and_
from sqlalchemy.orm import Session

from .models import Person, Marriage, BranchModerator, SuggestionBlock, ADMIN_ROLES

# Upper bound when walking ancestry; guards against cycles in corrupt data
MAX_ANCESTRY_DEPTH = 64


class PermissionLevel(str, enum.Enum):
    INNER = "inner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    FAMILY = "family"
    EXTENDED = "extended"
    BLOCKED = "blocked"
    NONE = "none"

    @property
    def rank(self) -> int:
        """Lower is more privileged."""
        return _ORDER.index(self)


_ORDER = list(PermissionLevel)

EDIT_LEVELS = frozenset({PermissionLevel.INNER, PermissionLevel.ADMIN, PermissionLevel.MODERATOR})


def can_edit(level: PermissionLevel) -> bool:
    return level in EDIT_LEVELS


def _live(session: Session, person_id: Optional[int]) -> Optional[Person]:
    if person_id is None:
        return None
    person = session.get(Person, person_id)
    if person is None or person.deleted_at is not None:
        return None
    return person


def _is_blocked(session: Session, person_id: int) -> bool:
    stmt = select(SuggestionBlock.id).where(
        SuggestionBlock.blocked_user_id == person_id,
        SuggestionBlock.is_active.is_(True),
    ).limit(1)
    return session.execute(stmt).first() is not None


def _moderates(session: Session, person_id: int, target_hid: Optional[str]) -> bool:
    if not target_hid:
        return False
    rows = session.execute(
        select(BranchModerator.branch_hid).where(
            BranchModerator.user_id == person_id,
            BranchModerator.is_active.is_(True),
        )
    ).scalars().all()
    for branch_hid in rows:
        # "1.2" governs "1.2" and "1.2.x", never "1.20"
        if target_hid == branch_hid or target_hid.startswith(branch_hid + "."):
            return True
    return False


def _are_spouses(session: Session, a: int, b: int) -> bool:
    stmt = select(Marriage.id).where(
        Marriage.deleted_at.is_(None),
        Marriage.status == "married",
        or_(
            and_(Marriage.husband_id == a, Marriage.wife_id == b),
            and_(Marriage.husband_id == b, Marriage.wife_id == a),
        ),
    ).limit(1)
    return session.execute(stmt).first() is not None


def ancestor_ids(session: Session, person: Person, depth: int = MAX_ANCESTRY_DEPTH) -> Set[int]:
    found: Set[int] = set()
    frontier = [person]
    for _ in range(depth):
        next_frontier = []
        for p in frontier:
            for pid in (p.father_id, p.mother_id):
                if pid is None or pid in found:
                    continue
                parent = _live(session, pid)
                if parent is None:
                    continue
                found.add(pid)
                next_frontier.append(parent)
        if not next_frontier:
            break
        frontier = next_frontier
    return found


def _shares_parent(a: Person, b: Person) -> bool:
    return (
        (a.father_id is not None and a.father_id == b.father_id)
        or (a.mother_id is not None and a.mother_id == b.mother_id)
    )


def resolve_permission(session: Session, actor_id: Optional[int], target_id: Optional[int]) -> PermissionLevel:
    """
    Resolve what ``actor_id`` may do to ``target_id``.

    Precedence: blocked, admin, branch moderator, inner circle (self, spouse,
    parent/child, sibling, direct line), family (shared grandparent: aunts,
    uncles, nephews, first cousins), extended (any profile with a lineage
    HID), none.
    """
    actor = _live(session, actor_id)
    target = _live(session, target_id)
    if actor is None or target is None:
        return PermissionLevel.NONE

    if _is_blocked(session, actor.id):
        return PermissionLevel.BLOCKED

    if actor.role in ADMIN_ROLES:
        return PermissionLevel.ADMIN

    if _moderates(session, actor.id, target.hid):
        return PermissionLevel.MODERATOR

    if actor.id == target.id:
        return PermissionLevel.INNER

    if _are_spouses(session, actor.id, target.id):
        return PermissionLevel.INNER

    if target.id in (actor.father_id, actor.mother_id) or actor.id in (target.father_id, target.mother_id):
        return PermissionLevel.INNER

    if _shares_parent(actor, target):
        return PermissionLevel.INNER

    actor_line = ancestor_ids(session, actor)
    if target.id in actor_line:
        return PermissionLevel.INNER
    target_line = ancestor_ids(session, target)
    if actor.id in target_line:
        return PermissionLevel.INNER

    if ancestor_ids(session, actor, depth=2) & ancestor_ids(session, target, depth=2):
        return PermissionLevel.FAMILY

    if target.hid:
        return PermissionLevel.EXTENDED

    return PermissionLevel.NONE
