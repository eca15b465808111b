"""
Audit trail and grouped undo.

Every mutation made by a batch is logged with the row's pre-image, captured
before the write, and its post-image. All entries of one batch share an
OperationGroup so the batch can be undone as a unit: pre-images are re-applied
newest first inside one transaction, under the same lock and permission rules
as a forward batch.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from contextlib import contextmanager
import json
import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Type

from sqlalchemy import select, or_, func, Date, DateTime
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import AlreadyUndone, LineageError, NotFound, PermissionDenied, ValidationFailed, VersionConflict
from .locking import RowLockManager, default_lock_manager
from .logging_config import log_info
from .models import AuditAction, AuditLogEntry, Marriage, OperationGroup, Person, UndoState
from .permissions import PermissionLevel, can_edit, resolve_permission

logger = logging.getLogger(__name__)

DEFAULT_UNDO_WINDOW_DAYS = 30
SNAPSHOT_EXCLUDE = frozenset({"version", "created_at", "updated_at"})
UNDOABLE_ACTIONS = (AuditAction.CREATE.value, AuditAction.UPDATE.value, AuditAction.DELETE.value)

TABLES: Dict[str, Type[Any]] = {
    Person.__tablename__: Person,
    Marriage.__tablename__: Marriage,
}


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot(record: Any) -> Dict[str, Any]:
    """Every mutable column of ``record`` as JSON-safe values."""
    return {
        col.key: _json_value(getattr(record, col.key))
        for col in record.__table__.columns
        if col.key not in SNAPSHOT_EXCLUDE
    }


def restore(record: Any, image: Dict[str, Any]) -> None:
    """Write a snapshot back onto ``record``; the primary key is left alone."""
    columns = {col.key: col for col in record.__table__.columns}
    for key, value in image.items():
        col = columns.get(key)
        if col is None or col.primary_key or key in SNAPSHOT_EXCLUDE:
            continue
        if value is not None and isinstance(col.type, DateTime):
            value = datetime.fromisoformat(value)
        elif value is not None and isinstance(col.type, Date):
            value = date.fromisoformat(value)
        setattr(record, key, value)


class AuditRecorder:
    """Writes audit entries for one batch under one operation group."""

    def __init__(self, session: Session, actor_id: int):
        self.session = session
        self.actor_id = actor_id
        self.group: Optional[OperationGroup] = None
        self.entries: List[AuditLogEntry] = []

    def open_group(self, parent_id: int, group_type: str, operation_count: int, description: str | None = None) -> OperationGroup:
        self.group = OperationGroup(
            created_by=self.actor_id,
            parent_id=parent_id,
            group_type=group_type,
            operation_count=operation_count,
            description=description,
        )
        self.session.add(self.group)
        self.session.flush()
        return self.group

    def _entry(self, action: AuditAction, record: Any, old: Optional[dict], new: Optional[dict]) -> AuditLogEntry:
        entry = AuditLogEntry(
            operation_group_id=self.group.id if self.group else None,
            actor_id=self.actor_id,
            table_name=record.__tablename__,
            record_id=record.id,
            action_type=action.value,
            old_data_json=json.dumps(old, ensure_ascii=False) if old is not None else None,
            new_data_json=json.dumps(new, ensure_ascii=False) if new is not None else None,
            version_after=record.version,
        )
        self.session.add(entry)
        self.entries.append(entry)
        return entry

    def capture_pre_image(self, record: Any) -> Dict[str, Any]:
        return snapshot(record)

    def record(self, action: AuditAction, record: Any, pre_image: Optional[dict] = None) -> AuditLogEntry:
        """Log a write that has already been applied to ``record``."""
        self.session.flush()
        post_image = None if action == AuditAction.DELETE else snapshot(record)
        return self._entry(action, record, pre_image, post_image)

    def record_create(self, record: Any) -> AuditLogEntry:
        return self.record(AuditAction.CREATE, record)

    @contextmanager
    def mutation(self, action: AuditAction, record: Any) -> Iterator[Any]:
        """Capture the pre-image, let the caller mutate, then log both images."""
        pre_image = self.capture_pre_image(record)
        yield record
        self.record(action, record, pre_image)


@dataclass
class UndoResult:
    group_id: str
    restored: int
    parent_version: int
    duration_ms: float
    restored_records: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "operation_group_id": self.group_id,
            "restored": self.restored,
            "parent_version": self.parent_version,
            "duration_ms": self.duration_ms,
            "records": self.restored_records,
        }


def _check_undo_permission(session: Session, group: OperationGroup, actor_id: int, window_days: int, now: datetime) -> PermissionLevel:
    level = resolve_permission(session, actor_id, group.parent_id)
    if level == PermissionLevel.ADMIN:
        return level
    if group.created_by != actor_id or not can_edit(level):
        raise PermissionDenied("only admins or the original actor may undo this group", level=level.value)
    if now - group.created_at > timedelta(days=window_days):
        raise PermissionDenied("undo window expired", level=level.value, window_days=window_days)
    return level


def _has_live_children(session: Session, person_id: int) -> bool:
    stmt = select(func.count(Person.id)).where(
        or_(Person.father_id == person_id, Person.mother_id == person_id),
        Person.deleted_at.is_(None),
    )
    return session.execute(stmt).scalar_one() > 0


def _undo_entry(session: Session, entry: AuditLogEntry, record: Any, now: datetime) -> None:
    if entry.action_type == AuditAction.CREATE.value:
        if isinstance(record, Person) and _has_live_children(session, record.id):
            raise ValidationFailed(f"profile {record.id} has children added after the batch", field="children")
        record.deleted_at = now
    else:
        restore(record, entry.old_data or {})
    record.updated_at = now


def undo_group(
    session: Session,
    group_id: str,
    actor_id: int,
    *,
    reason: str | None = None,
    locks: RowLockManager | None = None,
    undo_window_days: int = DEFAULT_UNDO_WINDOW_DAYS,
    now: datetime | None = None,
) -> UndoResult:
    """
    Undo every entry of an operation group in one transaction.

    Raises AlreadyUndone when the group, or any entry in it, was already
    undone; PermissionDenied for actors outside the undo policy;
    VersionConflict when a record was edited after the batch.
    """
    locks = locks or default_lock_manager
    start = time.perf_counter()
    now = now or datetime.utcnow()
    try:
        group = session.get(OperationGroup, group_id)
        if group is None:
            raise NotFound(f"operation group {group_id}")

        entries = session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.operation_group_id == group_id)
            .order_by(AuditLogEntry.id.desc())
        ).scalars().all()

        person_ids = [e.record_id for e in entries if e.table_name == Person.__tablename__]
        locks.lock_aggregate(session, group.parent_id, person_ids)
        session.refresh(group)

        if group.undo_state == UndoState.UNDONE.value or any(e.undone_at is not None for e in entries):
            raise AlreadyUndone(f"operation group {group_id}")

        _check_undo_permission(session, group, actor_id, undo_window_days, now)

        parent = session.get(Person, group.parent_id)
        if parent is None:
            raise NotFound(f"profile {group.parent_id}")

        checked: set = set()
        restored: List[Dict[str, Any]] = []
        for entry in entries:
            if entry.action_type not in UNDOABLE_ACTIONS or not entry.is_undoable:
                continue
            model = TABLES.get(entry.table_name)
            record = session.get(model, entry.record_id) if model else None
            if record is None:
                raise NotFound(f"{entry.table_name} {entry.record_id}")

            # Only the newest entry per record is compared with the live row
            key = (entry.table_name, entry.record_id)
            if key not in checked:
                if record.version != entry.version_after:
                    raise VersionConflict(
                        f"{entry.table_name} {entry.record_id} changed after the batch",
                        record_id=entry.record_id,
                        expected=entry.version_after,
                        actual=record.version,
                    )
                checked.add(key)

            before = snapshot(record)
            _undo_entry(session, entry, record, now)
            session.flush()

            entry.undone_at = now
            entry.undone_by = actor_id
            session.add(
                AuditLogEntry(
                    operation_group_id=None,
                    actor_id=actor_id,
                    table_name=entry.table_name,
                    record_id=entry.record_id,
                    action_type=AuditAction.UNDO.value,
                    old_data_json=json.dumps(before, ensure_ascii=False),
                    new_data_json=json.dumps(snapshot(record), ensure_ascii=False),
                    version_after=record.version,
                    is_undoable=False,
                    undo_of_id=entry.id,
                )
            )
            restored.append({"table": entry.table_name, "id": entry.record_id, "action": entry.action_type})

        parent.updated_at = now
        group.undo_state = UndoState.UNDONE.value
        group.undone_at = now
        group.undone_by = actor_id
        group.undo_reason = reason
        session.flush()
        parent_version = parent.version
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise VersionConflict("record changed during undo") from exc
    except LineageError as exc:
        session.rollback()
        logger.warning("Undo rejected", extra={"operation_group_id": group_id, "error_code": exc.code})
        raise
    except Exception:
        session.rollback()
        raise

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    log_info(
        logger,
        "Operation group undone",
        {"operation_group_id": group_id, "restored": len(restored), "duration_ms": duration_ms},
    )
    return UndoResult(group_id, len(restored), parent_version, duration_ms, restored)


def group_to_dict(group: OperationGroup, include_entries: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": group.id,
        "created_by": group.created_by,
        "parent_id": group.parent_id,
        "group_type": group.group_type,
        "operation_count": group.operation_count,
        "description": group.description,
        "undo_state": group.undo_state,
        "undone_at": group.undone_at.isoformat() if group.undone_at else None,
        "undone_by": group.undone_by,
        "created_at": group.created_at.isoformat() if group.created_at else None,
    }
    if include_entries:
        out["entries"] = [
            {
                "id": e.id,
                "table": e.table_name,
                "record_id": e.record_id,
                "action": e.action_type,
                "old_data": e.old_data,
                "new_data": e.new_data,
                "undone_at": e.undone_at.isoformat() if e.undone_at else None,
            }
            for e in group.entries
        ]
    return out


def list_groups(session: Session, actor_id: int | None = None, limit: int = 50) -> List[OperationGroup]:
    stmt = select(OperationGroup).order_by(OperationGroup.created_at.desc()).limit(limit)
    if actor_id is not None:
        stmt = stmt.where(OperationGroup.created_by == actor_id)
    return list(session.execute(stmt).scalars().all())


def group_detail(session: Session, group_id: str, actor_id: int | None = None) -> Dict[str, Any]:
    """Full group with its entries; with ``actor_id`` only that actor's own groups are readable."""
    group = session.get(OperationGroup, group_id)
    if group is None:
        raise NotFound(f"operation group {group_id}")
    if actor_id is not None and group.created_by != actor_id:
        raise PermissionDenied("operation group belongs to another user")
    return group_to_dict(group, include_entries=True)
