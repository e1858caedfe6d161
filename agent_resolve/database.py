"""Database configuration.

SQLAlchemy engine, session factory and the declarative base shared by the
ORM models. Services never commit; callers wrap a unit of work in
``session_scope`` which commits on success and rolls back on any error.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from agent_resolve.config import settings

# Base class for ORM models
Base = declarative_base()

SessionFactory = Callable[[], Session]


def make_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.database_url
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=settings.database_echo, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine()

SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables."""
    from agent_resolve import models  # noqa: F401  registers the tables

    Base.metadata.create_all(bind=bind or engine)
