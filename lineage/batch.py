"""
Batch mutation executor.

A batch is an ordered list of create/update/delete operations on the children
of one parent profile. It commits as one transaction or not at all:

    lock the aggregate -> resolve permission once -> check versions
    -> validate every op -> apply in caller order -> audit -> commit

Nothing is written before every check has passed, and any error rolls the
session back.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
import enum
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .audit import AuditRecorder
from .errors import (
    BatchTooLarge,
    LineageError,
    NotFound,
    PermissionDenied,
    ValidationFailed,
    VersionConflict,
)
from .hid import next_child_hid
from .locking import RowLockManager, default_lock_manager
from .logging_config import log_info
from .models import AuditAction, Marriage, Person
from .partial import Patch
from .permissions import ancestor_ids, can_edit, resolve_permission
from .validation import validate_patch
from .versioning import check_version

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 50

GROUP_BATCH_UPDATE = "batch_update"
GROUP_BATCH_REORDER = "batch_reorder"
BATCH_DESCRIPTION = "إضافة سريعة جماعية"
REORDER_DESCRIPTION = "إعادة ترتيب الأبناء"
SUCCESS_MESSAGE = "تم حفظ جميع التغييرات بنجاح"


class OperationKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    kind: OperationKind
    target_id: Optional[int] = None
    fields: Patch = field(default_factory=Patch)
    expected_version: Optional[int] = None


@dataclass
class BatchRequest:
    actor_id: Optional[int]
    parent_id: int
    expected_version: Optional[int]
    operations: List[Operation] = field(default_factory=list)
    description: Optional[str] = None
    selected_father_id: Optional[int] = None
    selected_mother_id: Optional[int] = None
    group_type: str = GROUP_BATCH_UPDATE


@dataclass
class BatchResult:
    created: int
    updated: int
    deleted: int
    parent_version: int
    operation_group_id: Optional[str]
    created_ids: List[int] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "operation_group_id": self.operation_group_id,
            "results": {
                "created": self.created,
                "updated": self.updated,
                "deleted": self.deleted,
                "total": self.total,
                "duration_ms": self.duration_ms,
            },
            "parent_version": self.parent_version,
            "created_ids": self.created_ids,
            "message": SUCCESS_MESSAGE,
        }


# ---------- request parsing ----------

def _optional_int(value: Any, field_name: str, index: Optional[int] = None) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{field_name} must be an integer", field=field_name, op_index=index)
    return value


def parse_operation(raw: Any, index: int) -> Operation:
    if not isinstance(raw, Mapping):
        raise ValidationFailed("operation must be an object", field="operations", op_index=index)
    try:
        kind = OperationKind(raw.get("kind"))
    except ValueError:
        raise ValidationFailed("kind must be create, update or delete", field="kind", op_index=index) from None

    fields = raw.get("fields") or {}
    if not isinstance(fields, Mapping):
        raise ValidationFailed("fields must be an object", field="fields", op_index=index)

    return Operation(
        kind=kind,
        target_id=_optional_int(raw.get("target_id"), "target_id", index),
        fields=Patch(fields),
        expected_version=_optional_int(raw.get("expected_version"), "expected_version", index),
    )


def _legacy_operations(payload: Mapping[str, Any]) -> List[Any]:
    """
    Translate the mobile client's three-list payload
    (``children_to_create``/``children_to_update``/``children_to_delete``)
    into one ordered operation list: creates, then updates, then deletes.
    """
    ops: List[Any] = []
    for child in payload.get("children_to_create") or []:
        ops.append({"kind": "create", "fields": child})
    for child in payload.get("children_to_update") or []:
        if not isinstance(child, Mapping):
            ops.append(child)
            continue
        fields = {k: v for k, v in child.items() if k not in ("id", "version")}
        ops.append({"kind": "update", "target_id": child.get("id"), "expected_version": child.get("version"), "fields": fields})
    for child in payload.get("children_to_delete") or []:
        if not isinstance(child, Mapping):
            ops.append(child)
            continue
        ops.append({"kind": "delete", "target_id": child.get("id"), "expected_version": child.get("version")})
    return ops


def parse_batch_request(actor_id: Optional[int], parent_id: int, payload: Any) -> BatchRequest:
    """Build a BatchRequest from a decoded JSON body."""
    if not isinstance(payload, Mapping):
        raise ValidationFailed("request body must be a JSON object", field="body")

    if "operations" in payload:
        raw_ops = payload["operations"]
    else:
        raw_ops = _legacy_operations(payload)
    if not isinstance(raw_ops, list):
        raise ValidationFailed("operations must be a list", field="operations")

    expected = payload.get("expected_version", payload.get("parent_version"))
    return BatchRequest(
        actor_id=actor_id,
        parent_id=parent_id,
        expected_version=_optional_int(expected, "expected_version"),
        operations=[parse_operation(raw, i) for i, raw in enumerate(raw_ops)],
        description=payload.get("description"),
        selected_father_id=_optional_int(payload.get("selected_father_id"), "selected_father_id"),
        selected_mother_id=_optional_int(payload.get("selected_mother_id"), "selected_mother_id"),
    )


# ---------- checks ----------

def _live_person(session: Session, person_id: Optional[int]) -> Optional[Person]:
    if person_id is None:
        return None
    person = session.get(Person, person_id)
    if person is None or person.deleted_at is not None:
        return None
    return person


def _is_child_of(person: Person, parent: Person) -> bool:
    return parent.id in (person.father_id, person.mother_id)


def _live_children_count(session: Session, person_id: int) -> int:
    stmt = select(func.count(Person.id)).where(
        or_(Person.father_id == person_id, Person.mother_id == person_id),
        Person.deleted_at.is_(None),
    )
    return session.execute(stmt).scalar_one()


def _load_targets(session: Session, parent: Person, operations: Sequence[Operation]) -> Dict[int, Person]:
    targets: Dict[int, Person] = {}
    for index, op in enumerate(operations):
        if op.kind == OperationKind.CREATE:
            continue
        if op.target_id is None:
            raise ValidationFailed("target_id is required", field="target_id", op_index=index)
        if op.target_id in targets:
            raise ValidationFailed(f"profile {op.target_id} appears twice", field="target_id", op_index=index)
        if op.target_id == parent.id:
            raise ValidationFailed("the parent cannot be edited as its own child", field="target_id", op_index=index)
        target = _live_person(session, op.target_id)
        if target is None:
            raise NotFound(f"profile {op.target_id}")
        if not _is_child_of(target, parent):
            raise ValidationFailed(f"profile {target.id} is not a child of {parent.id}", field="target_id", op_index=index)
        if op.expected_version is None:
            raise ValidationFailed("expected_version is required", field="expected_version", op_index=index)
        targets[op.target_id] = target
    return targets


def _check_child_versions(targets: Dict[int, Person], operations: Sequence[Operation]) -> None:
    for op in operations:
        if op.kind != OperationKind.CREATE:
            check_version(targets[op.target_id], op.expected_version)


def _check_linked_parent(session: Session, person_id: Optional[int], gender: str, field_name: str, index: Optional[int]) -> Optional[Person]:
    if person_id is None:
        return None
    person = _live_person(session, person_id)
    if person is None or person.gender != gender:
        raise ValidationFailed(f"{field_name} must be a live {gender} profile", field=field_name, op_index=index)
    return person


def _has_marriage(session: Session, person_id: int) -> bool:
    stmt = select(Marriage.id).where(
        Marriage.deleted_at.is_(None),
        or_(Marriage.husband_id == person_id, Marriage.wife_id == person_id),
    ).limit(1)
    return session.execute(stmt).first() is not None


def _married(session: Session, husband_id: int, wife_id: int) -> bool:
    # divorced and widowed wives stay valid mothers
    stmt = select(Marriage.id).where(
        Marriage.deleted_at.is_(None),
        Marriage.husband_id == husband_id,
        Marriage.wife_id == wife_id,
    ).limit(1)
    return session.execute(stmt).first() is not None


def _relinked_mother_ids(operations: Sequence[Operation]) -> List[int]:
    ids = []
    for op in operations:
        mother_id = op.fields.get("mother_id")
        if op.kind == OperationKind.UPDATE and isinstance(mother_id, int) and not isinstance(mother_id, bool):
            ids.append(mother_id)
    return ids


def _check_mother_change(session: Session, request: BatchRequest, parent: Person, target: Person, index: int) -> None:
    """
    Re-point a child's mother to another wife of its father.

    The child stays under the same father, so its HID and generation hold.
    """
    if parent.gender != "male":
        raise ValidationFailed("the mother link ties this child to its parent", field="mother_id", op_index=index)
    mother_id = request.operations[index].fields.get("mother_id")
    if mother_id is None:
        return
    mother = _check_linked_parent(session, mother_id, "female", "mother_id", index)
    if not _married(session, parent.id, mother.id):
        raise ValidationFailed(f"profile {mother.id} is not a wife of {parent.id}", field="mother_id", op_index=index)
    if mother.id == target.id or target.id in ancestor_ids(session, mother):
        raise ValidationFailed("a profile cannot descend from itself", field="mother_id", op_index=index)
    level = resolve_permission(session, request.actor_id, mother.id)
    if not can_edit(level):
        raise PermissionDenied(level=level.value, record_id=mother.id)


def _check_gender_change(session: Session, target: Person, op: Operation, index: int) -> None:
    if not op.fields.is_set("gender") or op.fields.get("gender") == target.gender:
        return
    if _has_marriage(session, target.id) or _live_children_count(session, target.id):
        raise ValidationFailed(
            f"{target.name} is a spouse or parent; gender cannot change",
            field="gender",
            op_index=index,
        )


def _validate_operations(session: Session, request: BatchRequest, parent: Person, targets: Dict[int, Person]) -> None:
    for index, op in enumerate(request.operations):
        if op.kind == OperationKind.CREATE:
            validate_patch(op.fields, index, creating=True)
        elif op.kind == OperationKind.UPDATE:
            if not len(op.fields):
                raise ValidationFailed("nothing to update", field="fields", op_index=index)
            validate_patch(op.fields, index)
            target = targets[op.target_id]
            if op.fields.is_set("mother_id"):
                _check_mother_change(session, request, parent, target, index)
            _check_gender_change(session, target, op, index)
        else:
            remaining = _live_children_count(session, op.target_id)
            if remaining:
                target = targets[op.target_id]
                raise ValidationFailed(
                    f"{target.name} has {remaining} children; delete them first",
                    field="children",
                    op_index=index,
                )


def _authorize(session: Session, request: BatchRequest, parent: Person) -> None:
    level = resolve_permission(session, request.actor_id, parent.id)
    if not can_edit(level):
        raise PermissionDenied(level=level.value)
    check_version(parent, request.expected_version)


# ---------- apply ----------

def _new_child(session: Session, parent: Person, op: Operation, father: Optional[Person], mother: Optional[Person]) -> Person:
    if parent.gender == "male":
        father_id, mother_id = parent.id, mother.id if mother else None
        hid_source = parent.hid
    else:
        father_id, mother_id = father.id if father else None, parent.id
        hid_source = father.hid if father and father.hid else parent.hid

    child = Person(
        generation=(parent.generation or 0) + 1,
        father_id=father_id,
        mother_id=mother_id,
        hid=next_child_hid(session, hid_source),
    )
    op.fields.apply(child)
    session.add(child)
    return child


def execute_batch(
    session: Session,
    request: BatchRequest,
    *,
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    locks: RowLockManager | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """
    Apply every operation of ``request`` in one transaction.

    Raises BatchTooLarge, NotFound, ResourceBusy, PermissionDenied,
    VersionConflict or ValidationFailed; in every case the session has been
    rolled back and nothing was written.
    """
    size = len(request.operations)
    if size > max_batch_size:
        raise BatchTooLarge(limit=max_batch_size, size=size)
    if request.description is not None and not isinstance(request.description, str):
        raise ValidationFailed("description must be text", field="description")

    locks = locks or default_lock_manager
    start = time.perf_counter()
    now = now or datetime.utcnow()
    try:
        parent = _live_person(session, request.parent_id)
        if parent is None:
            raise NotFound(f"profile {request.parent_id}")

        if size == 0:
            _authorize(session, request, parent)
            return BatchResult(0, 0, 0, parent.version, None)

        target_ids = [op.target_id for op in request.operations if op.kind != OperationKind.CREATE]
        locks.lock_aggregate(session, parent.id, target_ids + _relinked_mother_ids(request.operations))
        session.refresh(parent)
        if parent.deleted_at is not None:
            raise NotFound(f"profile {parent.id}")

        _authorize(session, request, parent)
        targets = _load_targets(session, parent, request.operations)
        _check_child_versions(targets, request.operations)

        father = _check_linked_parent(session, request.selected_father_id, "male", "selected_father_id", None)
        mother = _check_linked_parent(session, request.selected_mother_id, "female", "selected_mother_id", None)
        _validate_operations(session, request, parent, targets)

        recorder = AuditRecorder(session, request.actor_id)
        group = recorder.open_group(
            parent.id,
            request.group_type,
            size,
            request.description or BATCH_DESCRIPTION,
        )

        created_ids: List[int] = []
        updated = deleted = 0
        for op in request.operations:
            if op.kind == OperationKind.CREATE:
                child = _new_child(session, parent, op, father, mother)
                recorder.record_create(child)
                created_ids.append(child.id)
            elif op.kind == OperationKind.UPDATE:
                target = targets[op.target_id]
                with recorder.mutation(AuditAction.UPDATE, target):
                    op.fields.apply(target)
                    target.updated_at = now
                updated += 1
            else:
                target = targets[op.target_id]
                with recorder.mutation(AuditAction.DELETE, target):
                    target.deleted_at = now
                    target.updated_at = now
                deleted += 1

        parent.updated_at = now
        session.flush()
        parent_version = parent.version
        group_id = group.id
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        logger.warning("Batch lost a concurrent write", extra={"parent_id": request.parent_id})
        raise VersionConflict("record changed during the batch", record_id=request.parent_id) from exc
    except IntegrityError as exc:
        session.rollback()
        raise ValidationFailed(f"constraint violation: {exc.orig}", field="") from exc
    except LineageError as exc:
        session.rollback()
        logger.warning("Batch rejected", extra={"parent_id": request.parent_id, "error_code": exc.code})
        raise
    except Exception:
        session.rollback()
        raise

    result = BatchResult(
        created=len(created_ids),
        updated=updated,
        deleted=deleted,
        parent_version=parent_version,
        operation_group_id=group_id,
        created_ids=created_ids,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    log_info(
        logger,
        "Batch committed",
        {
            "operation_group_id": group_id,
            "parent_id": request.parent_id,
            "created": result.created,
            "updated": result.updated,
            "deleted": result.deleted,
            "duration_ms": result.duration_ms,
        },
    )
    return result


def parse_reorder(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, Mapping):
        raise ValidationFailed("request body must be a JSON object", field="body")
    moves = payload.get("children", payload.get("reorder_operations"))
    if not isinstance(moves, list):
        raise ValidationFailed("children must be a list", field="children")
    return moves


def reorder_children(
    session: Session,
    actor_id: Optional[int],
    parent_id: int,
    expected_version: Optional[int],
    moves: Sequence[Mapping[str, Any]],
    *,
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    locks: RowLockManager | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """
    Rewrite the sibling order of a parent's children.

    ``moves`` holds ``{"id", "new_sibling_order", "version"}`` items. The
    orders must be distinct and non-negative; ownership, locking,
    permission and versions are enforced by the batch executor.
    """
    if not moves:
        raise ValidationFailed("قائمة العمليات فارغة", field="children")
    if len(moves) > max_batch_size:
        raise BatchTooLarge(limit=max_batch_size, size=len(moves))

    seen = set()
    operations: List[Operation] = []
    for index, move in enumerate(moves):
        if not isinstance(move, Mapping):
            raise ValidationFailed("move must be an object", field="children", op_index=index)
        order = move.get("new_sibling_order")
        if isinstance(order, bool) or not isinstance(order, int) or order < 0:
            raise ValidationFailed("sibling order must be a non-negative integer", field="new_sibling_order", op_index=index)
        if order in seen:
            raise ValidationFailed(f"sibling order {order} used twice", field="new_sibling_order", op_index=index)
        seen.add(order)
        operations.append(
            Operation(
                kind=OperationKind.UPDATE,
                target_id=_optional_int(move.get("id"), "id", index),
                fields=Patch({"sibling_order": order}),
                expected_version=_optional_int(move.get("version"), "version", index),
            )
        )

    request = BatchRequest(
        actor_id=actor_id,
        parent_id=parent_id,
        expected_version=expected_version,
        operations=operations,
        description=REORDER_DESCRIPTION,
        group_type=GROUP_BATCH_REORDER,
    )
    return execute_batch(session, request, max_batch_size=max_batch_size, locks=locks, now=now)
