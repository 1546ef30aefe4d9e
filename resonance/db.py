from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from resonance.config import get_settings
from resonance.models import Base

MEMORY = ":memory:"

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _build_engine(db_path: str | Path) -> Engine:
    if str(db_path) == MEMORY:
        # one shared connection, otherwise every session sees an empty database
        return create_engine(
            "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool,
        )
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


def init_db(db_path: str | Path | None = None) -> None:
    """Open the SQLite database at *db_path* (default from settings) and create missing tables.

    Calling it again swaps the process-wide engine; ``":memory:"`` gives a throwaway database.
    """
    global _engine, _SessionLocal
    engine = _build_engine(db_path if db_path is not None else get_settings().database_path)
    Base.metadata.create_all(engine)
    with _lock:
        previous, _engine = _engine, engine
        _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    if previous is not None:
        previous.dispose()


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for the CLI and MCP server; rolled back on error, always closed.

    Writes still need an explicit ``session.commit()``.
    """
    yield from session_generator()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
