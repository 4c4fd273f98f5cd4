from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import SaveFailed


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def commit_or_rollback(session: Session) -> None:
    """Commit the unit of work as one batch; on failure undo all of it."""
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise SaveFailed(exc) from exc


@contextmanager
def session_scope(factory=None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        commit_or_rollback(session)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
