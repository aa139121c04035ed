"""Run/summary database: engine, sessions and table creation.

Only bookkeeping lives here; snapshots themselves are files under
``settings.data_dir``.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .config import settings


class Base(DeclarativeBase):
    """Declarative base for the run and snapshot-summary tables."""
    pass


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared with the API's worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding a session for one request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Create the runs and snapshot_summaries tables if missing."""
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
