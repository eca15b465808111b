from flask import g
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, Session

# Global engine and session factory
_engine = None
_SessionLocal = None

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def init_engine(database_url: str) -> None:
    """Initialize the SQLAlchemy engine and session factory."""
    global _engine, _SessionLocal
    is_sqlite = database_url.startswith("sqlite")
    _engine = create_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False} if is_sqlite else {}
    )
    if is_sqlite:
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

def get_engine():
    """Get the SQLAlchemy engine."""
    return _engine

def new_session() -> Session:
    """A session outside any request (CLI, background jobs)."""
    return _SessionLocal()

def get_session() -> Session:
    """Get a SQLAlchemy session tied to the Flask request context."""
    if "db_session" not in g:
        g.db_session = _SessionLocal()
    return g.db_session

def close_session(e=None) -> None:
    """Close the SQLAlchemy session at the end of the request."""
    session = g.pop("db_session", None)
    if session is not None:
        session.close()

def database_url_for(config) -> str:
    url = config.get("DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{config['DATABASE']}"

def init_app(app) -> None:
    """Initialize database with Flask app."""
    from pathlib import Path

    database_url = database_url_for(app.config)
    if not app.config.get("DATABASE_URL"):
        Path(app.config["DATABASE"]).parent.mkdir(parents=True, exist_ok=True)
    init_engine(database_url)

    # Register teardown
    app.teardown_appcontext(close_session)


def ensure_lookup_indexes(engine) -> None:
    """Add lookup indexes missing from databases created before they existed (idempotent)."""
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    with engine.begin() as conn:
        if "profiles" in tables:
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_profiles_father ON profiles(father_id)"))
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_profiles_mother ON profiles(mother_id)"))
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_profiles_deleted ON profiles(deleted_at)"))
        if "audit_log" in tables:
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_audit_log_group ON audit_log(operation_group_id)"))
        if "marriages" in tables:
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_marriages_husband ON marriages(husband_id)"))
            conn.execute(text("CREATE INDEX IF NOT EXISTS idx_marriages_wife ON marriages(wife_id)"))
