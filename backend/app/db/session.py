from __future__ import annotations

from contextlib import AbstractContextManager, contextmanager
from typing import Callable, Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.settings import settings

# Services take one of these so tests and scripts can hand in their own scope.
SessionFactory = Callable[[], AbstractContextManager[Session]]


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # sessions are opened from FastAPI threadpool workers
        return create_engine(url, future=True, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, future=True, echo=False, pool_pre_ping=True)


ENGINE = build_engine(settings.database_url)

SessionLocal = sessionmaker(bind=ENGINE, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    """One transaction per block: commit on exit, roll back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
