from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .settings import get_settings


@lru_cache
def get_engine() -> Engine:
    """
    The engine is the starting point for all SQLAlchemy applications.
    It manages the connection pool and dialect.
    """
    database_url = get_settings().DATABASE_URL
    return create_engine(
        database_url,
        # Only needed for SQLite to handle concurrent requests
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
    )


@lru_cache
def get_session_factory() -> sessionmaker:
    # Each request gets its own session (a unit of work)
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db() -> None:
    """Creates any missing tables."""
    from abtesting.models.orm.base import Base
    from abtesting.models.orm import ab_test, assignment, event  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        # Ensures the session is closed even if an exception occurs
        db.close()
