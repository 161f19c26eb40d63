from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

# Milliseconds a writer waits on a locked SQLite file before failing.
SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine(url: str) -> Engine:
    if not _is_sqlite(url):
        return create_engine(url, pool_pre_ping=True)
    eng = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(eng, "connect", _sqlite_on_connect)
    return eng


def _sqlite_on_connect(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    for pragma in (
        "journal_mode=WAL",
        "foreign_keys=ON",
        f"busy_timeout={SQLITE_BUSY_TIMEOUT_MS}",
    ):
        cursor.execute(f"PRAGMA {pragma};")
    cursor.close()


engine = _build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a multi-step reconciliation as one database transaction.

    Everything flushed inside the block is committed together; any exception
    rolls the whole unit back before propagating.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


@contextmanager
def session_scope() -> Iterator[Session]:
    """Fresh session for work outside a request (scheduler jobs, startup)."""
    session = SessionLocal()
    try:
        with atomic(session):
            yield session
    finally:
        session.close()


def init_db() -> None:
    from services import seed_system_categories

    Base.metadata.create_all(engine)
    with session_scope() as session:
        seed_system_categories(session)
