"""
Engine, session factory and the unit-of-work helpers.

Every sqlite connection runs with ``foreign_keys=ON`` so that a transaction
naming a missing account or category is refused by the store itself. File
databases also switch to WAL; in-memory ones keep their default journal.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _is_memory_sqlite(database: Optional[str]) -> bool:
    return not database or database == ":memory:" or "mode=memory" in database


def make_engine(database_url: Optional[str] = None, **kwargs: object) -> Engine:
    """Build an engine for ``database_url`` (default: the configured one)."""
    url = make_url(database_url or get_settings().database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, **kwargs)

    connect_args = dict(kwargs.pop("connect_args", None) or {})
    connect_args.setdefault("check_same_thread", False)
    eng = create_engine(url, connect_args=connect_args, **kwargs)
    use_wal = not _is_memory_sqlite(url.database)

    @event.listens_for(eng, "connect")
    def _sqlite_pragmas(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        if use_wal:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return eng


def make_sessionmaker(eng: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run one mutation as a single unit: commit on success, roll back on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
