from flask import Flask
from pathlib import Path
import os

def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default

def create_app(test_config: dict | None = None) -> Flask:
    """
    App factory.

    Every setting has an APP_* environment override; ``test_config`` wins
    over both.
    """
    app = Flask(__name__, instance_relative_config=False)

    repo_root = Path(__file__).resolve().parents[1]

    # Support environment variable for database path (for Termux and other environments)
    db_path_env = os.environ.get("APP_DB_PATH")
    if db_path_env:
        db_path = Path(db_path_env)
        # Convert relative paths to absolute based on repo root
        if not db_path.is_absolute():
            db_path = repo_root / db_path
    else:
        # Default path
        db_path = repo_root / "data" / "lineage.sqlite"

    from .audit import DEFAULT_UNDO_WINDOW_DAYS
    from .batch import DEFAULT_MAX_BATCH_SIZE
    from .errors import DEFAULT_LANGUAGE

    app.config.from_mapping(
        DATABASE=str(db_path),
        DATABASE_URL=os.environ.get("APP_DATABASE_URL") or None,
        LOG_DIR=os.environ.get("APP_LOG_DIR") or str(repo_root / "logs"),
        MAX_BATCH_SIZE=_env_int("APP_MAX_BATCH_SIZE", DEFAULT_MAX_BATCH_SIZE),
        UNDO_WINDOW_DAYS=_env_int("APP_UNDO_WINDOW_DAYS", DEFAULT_UNDO_WINDOW_DAYS),
        DISPLAY_LANGUAGE=os.environ.get("APP_DISPLAY_LANGUAGE", DEFAULT_LANGUAGE),
        JSON_SORT_KEYS=False,
        TESTING=False,
    )

    if test_config:
        app.config.update(test_config)

    if not app.config["TESTING"]:
        from .logging_config import setup_logging
        setup_logging(app)

    from . import db
    db.init_app(app)

    from .locking import default_lock_manager
    app.extensions["lineage_locks"] = app.config.get("LOCK_MANAGER") or default_lock_manager

    from .routes import api_bp
    app.register_blueprint(api_bp)

    # Ensure tables exist for tests and first-run scenarios
    with app.app_context():
        from .db import get_engine, ensure_lookup_indexes
        from .models import Base
        engine = get_engine()
        Base.metadata.create_all(engine)
        ensure_lookup_indexes(engine)

    return app
