from contextlib import contextmanager
import os
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/store.db")


def _ensure_sqlite_parent(database_url: str) -> None:
    # avoid 'unable to open database file' for a fresh sqlite path
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        db_path = database_url.split("sqlite:///")[-1]
        Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str) -> Engine:
    _ensure_sqlite_parent(database_url)
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, future=True, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    return engine


def build_session_factory(engine: Engine):
    """Return a ``get_session``-style context manager bound to ``engine``.

    The session commits when the block exits cleanly and rolls back on any
    exception, including ``KeyboardInterrupt``.
    """
    maker = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    @contextmanager
    def session_scope():
        session = maker()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    return session_scope


_default_factory = None


def get_session():
    global _default_factory
    if _default_factory is None:
        _default_factory = build_session_factory(build_engine(DATABASE_URL))
    return _default_factory()


# SQLSTATEs for serialization failure, deadlock and lock-not-available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
_RETRYABLE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize access",
    "lock wait timeout",
)


def is_lock_contention(exc: BaseException) -> bool:
    """True when a driver error means "busy, try again" rather than a broken database."""
    orig = getattr(exc, "orig", None) or exc
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    msg = str(orig).lower()
    return any(m in msg for m in _RETRYABLE_MESSAGES)
