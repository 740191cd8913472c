from __future__ import annotations

from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import SQL_ECHO, load_settings

Base = declarative_base()


def make_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    url = database_url or load_settings().database_url
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for the threaded FastAPI server.
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=SQL_ECHO, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_schema(engine: Engine) -> None:
    # Import for the side effect of registering every table on Base.metadata
    from . import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)


_SESSION_FACTORY: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        engine = make_engine()
        create_schema(engine)
        _SESSION_FACTORY = make_session_factory(engine)
    return _SESSION_FACTORY


def get_db() -> Generator[Session, None, None]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
