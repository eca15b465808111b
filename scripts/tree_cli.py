import argparse
import json
import os
import sys

from sqlalchemy.orm import sessionmaker

from lineage import create_app
from lineage.audit import group_to_dict, list_groups, undo_group
from lineage.db import get_engine
from lineage.errors import LineageError
from lineage.marriages import find_inconsistent_marriages
from lineage.permissions import resolve_permission


def _session_from_args(args):
    app = create_app({
        "DATABASE": args.db,
        "TESTING": args.quiet,
    })
    session_factory = sessionmaker(bind=get_engine(), autoflush=False)
    return app, session_factory


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def cmd_groups(args) -> int:
    app, session_factory = _session_from_args(args)
    with app.app_context():
        session = session_factory()
        try:
            groups = list_groups(session, args.user, args.limit)
            _print_json([group_to_dict(g) for g in groups])
            return 0
        finally:
            session.close()


def cmd_undo(args) -> int:
    app, session_factory = _session_from_args(args)
    with app.app_context():
        session = session_factory()
        try:
            result = undo_group(
                session,
                args.group,
                args.user,
                reason=args.reason,
                locks=app.extensions["lineage_locks"],
                undo_window_days=app.config["UNDO_WINDOW_DAYS"],
            )
            _print_json(result.to_dict())
            return 0
        except LineageError as exc:
            print(f"{exc.code}: {exc.message('en')}", file=sys.stderr)
            return 1
        finally:
            session.close()


def cmd_check_marriages(args) -> int:
    app, session_factory = _session_from_args(args)
    with app.app_context():
        session = session_factory()
        try:
            problems = find_inconsistent_marriages(session)
            _print_json(problems)
            print(f"inconsistent={len(problems)}", file=sys.stderr)
            return 1 if problems else 0
        finally:
            session.close()


def cmd_permission(args) -> int:
    app, session_factory = _session_from_args(args)
    with app.app_context():
        session = session_factory()
        try:
            level = resolve_permission(session, args.actor, args.target)
            print(level.value)
            return 0
        finally:
            session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Family tree audit, undo and integrity tools")
    parser.add_argument("--db", default=os.environ.get("APP_DB_PATH") or "data/lineage.sqlite")
    parser.add_argument("--quiet", action="store_true", help="Skip log file setup")

    sub = parser.add_subparsers(dest="command", required=True)

    groups = sub.add_parser("groups", help="List recent operation groups")
    groups.add_argument("--user", type=int, default=None, help="Only groups created by this profile id")
    groups.add_argument("--limit", type=int, default=50)
    groups.set_defaults(func=cmd_groups)

    undo = sub.add_parser("undo", help="Undo an operation group")
    undo.add_argument("group")
    undo.add_argument("--user", type=int, required=True, help="Profile id performing the undo")
    undo.add_argument("--reason", default=None)
    undo.set_defaults(func=cmd_undo)

    check = sub.add_parser("check-marriages", help="Report marriages breaking the munasib rule")
    check.set_defaults(func=cmd_check_marriages)

    permission = sub.add_parser("permission", help="Resolve the permission level of one profile over another")
    permission.add_argument("actor", type=int)
    permission.add_argument("target", type=int)
    permission.set_defaults(func=cmd_permission)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
