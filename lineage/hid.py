"""
Lineage identifiers (HID).

Every blood member of the family carries a dotted path such as ``1.2.3``:
the parent's HID followed by the child's position among its siblings. Spouses
from outside the family have none.
"""
from __future__ import annotations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Person


def next_child_hid(session: Session, parent_hid: Optional[str]) -> Optional[str]:
    """
    Next free child HID under ``parent_hid``.

    Soft-deleted children keep their HID, so they still count here; handing
    their number out again would collide on the unique index.
    """
    if not parent_hid:
        return None
    prefix = parent_hid + "."
    existing = session.execute(
        select(Person.hid).where(Person.hid.like(prefix + "%"))
    ).scalars().all()
    highest = 0
    for hid in existing:
        suffix = hid[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1}"
