from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app
from typing import Any, Dict
from sqlalchemy import select, or_
import logging

from .db import get_session
from .models import Person
from .auth import ActorContext, resolve_actor
from .audit import group_detail, group_to_dict, list_groups, undo_group
from .batch import parse_batch_request, parse_reorder, execute_batch, reorder_children
from .errors import LineageError, NotFound, ValidationFailed
from .logging_config import log_info
from .marriages import create_marriage, find_inconsistent_marriages
from .permissions import resolve_permission

api_bp = Blueprint("api", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

PROFILE_FIELDS = (
    "id",
    "hid",
    "name",
    "gender",
    "generation",
    "father_id",
    "mother_id",
    "sibling_order",
    "status",
    "kunya",
    "nickname",
    "bio",
    "birth_place",
    "current_residence",
    "occupation",
    "education",
    "phone",
    "email",
    "photo_url",
    "dob_data",
    "dod_data",
    "profile_visibility",
    "family_origin",
    "version",
)


@api_bp.errorhandler(LineageError)
def handle_lineage_error(exc: LineageError):
    language = current_app.config.get("DISPLAY_LANGUAGE")
    log_info(logger, "Request failed", {"error_code": exc.code, "path": request.path})
    return jsonify(exc.to_dict(language)), exc.http_status


def _person_to_dict(p: Person) -> Dict[str, Any]:
    out = {field: getattr(p, field) for field in PROFILE_FIELDS}
    out["updated_at"] = p.updated_at.isoformat() if p.updated_at else None
    return out


def _actor() -> ActorContext:
    return resolve_actor(get_session(), request.headers.get(ACTOR_HEADER))


def _json_body() -> Any:
    return request.get_json(force=True, silent=True)


def _locks():
    return current_app.extensions["lineage_locks"]


def _live_person(session, person_id: int) -> Person:
    person = session.get(Person, person_id)
    if person is None or person.deleted_at is not None:
        raise NotFound(f"profile {person_id}")
    return person


@api_bp.get("/health")
def health():
    session = get_session()
    session.execute(select(1))
    return jsonify({"ok": True})


@api_bp.get("/profiles/<int:person_id>")
def get_profile(person_id: int):
    session = get_session()
    return jsonify(_person_to_dict(_live_person(session, person_id)))


@api_bp.get("/profiles/<int:person_id>/children")
def list_children(person_id: int):
    session = get_session()
    parent = _live_person(session, person_id)
    stmt = (
        select(Person)
        .where(
            or_(Person.father_id == parent.id, Person.mother_id == parent.id),
            Person.deleted_at.is_(None),
        )
        .order_by(Person.sibling_order, Person.id)
    )
    children = session.execute(stmt).scalars().all()
    return jsonify({
        "parent": _person_to_dict(parent),
        "children": [_person_to_dict(c) for c in children],
    })


@api_bp.get("/profiles/<int:person_id>/permission")
def get_permission(person_id: int):
    actor_id = _actor().require_profile()
    level = resolve_permission(get_session(), actor_id, person_id)
    return jsonify({"actor_id": actor_id, "target_id": person_id, "level": level.value})


@api_bp.post("/profiles/<int:parent_id>/batch")
def save_batch(parent_id: int):
    actor_id = _actor().require_profile()
    batch = parse_batch_request(actor_id, parent_id, _json_body())
    result = execute_batch(
        get_session(),
        batch,
        max_batch_size=current_app.config["MAX_BATCH_SIZE"],
        locks=_locks(),
    )
    return jsonify(result.to_dict())


@api_bp.post("/profiles/<int:parent_id>/reorder")
def reorder(parent_id: int):
    actor_id = _actor().require_profile()
    data = _json_body()
    moves = parse_reorder(data)
    expected = data.get("expected_version")
    if expected is not None and (isinstance(expected, bool) or not isinstance(expected, int)):
        raise ValidationFailed("expected_version must be an integer", field="expected_version")
    result = reorder_children(
        get_session(),
        actor_id,
        parent_id,
        expected,
        moves,
        max_batch_size=current_app.config["MAX_BATCH_SIZE"],
        locks=_locks(),
    )
    return jsonify(result.to_dict())


@api_bp.get("/operation-groups")
def operation_groups():
    actor = _actor()
    actor.require_profile()
    mine = request.args.get("mine") == "1" or not actor.is_admin
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
    except ValueError:
        raise ValidationFailed("limit must be an integer", field="limit") from None
    groups = list_groups(get_session(), actor.profile_id if mine else None, limit)
    return jsonify({"items": [group_to_dict(g) for g in groups]})


@api_bp.get("/operation-groups/<group_id>")
def operation_group(group_id: str):
    actor = _actor()
    actor_id = actor.require_profile()
    return jsonify(group_detail(get_session(), group_id, None if actor.is_admin else actor_id))


@api_bp.post("/operation-groups/<group_id>/undo")
def undo(group_id: str):
    actor_id = _actor().require_profile()
    data = _json_body() or {}
    result = undo_group(
        get_session(),
        group_id,
        actor_id,
        reason=data.get("reason") if isinstance(data, dict) else None,
        locks=_locks(),
        undo_window_days=current_app.config["UNDO_WINDOW_DAYS"],
    )
    return jsonify(result.to_dict())


@api_bp.post("/marriages")
def add_marriage():
    actor_id = _actor().require_profile()
    data = _json_body()
    if not isinstance(data, dict):
        raise ValidationFailed("request body must be a JSON object", field="body")
    result = create_marriage(
        get_session(),
        actor_id,
        data.get("husband_id"),
        data.get("wife_id"),
        munasib=data.get("munasib"),
        status=data.get("status") or "married",
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        locks=_locks(),
    )
    return jsonify(result.to_dict()), 201


@api_bp.get("/integrity/marriages")
def marriage_integrity():
    _actor().require_profile()
    problems = find_inconsistent_marriages(get_session())
    return jsonify({"count": len(problems), "items": problems})
