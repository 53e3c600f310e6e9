"""Engine, session and unit-of-work helpers for the CI/CD control tower."""

import os
from contextlib import contextmanager
from typing import Dict, Generator, Iterator, Optional

import structlog
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_settings
from ..errors import PersistenceError

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Declarative base shared by every control tower table."""


# Local SQLite file used when neither DATABASE_URL nor settings provide one.
DEFAULT_DATABASE_URL = "sqlite:///./cicd_control_tower.db"

# async driver name -> sync driver the ORM and Alembic run on
_SYNC_DRIVERS: Dict[str, str] = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "postgresql+aiopg": "postgresql+psycopg",
    "postgresql+psycopg_async": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def _ensure_sync_driver(url: URL) -> URL:
    """Swap an async driver for its synchronous counterpart."""
    sync_driver = _SYNC_DRIVERS.get(url.drivername)
    if sync_driver is None:
        return url
    return url.set(drivername=sync_driver)


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Resolve the database URL, explicit argument first, then env, then settings."""
    url = make_url(
        raw_url
        or os.getenv("DATABASE_URL")
        or get_settings().database_url
        or DEFAULT_DATABASE_URL
    )
    # str(url) masks the password
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


_engine: Optional[Engine] = None


def create_db_engine(database_url: str) -> Engine:
    """Build an engine for SQLite (dev/test) or PostgreSQL (prod).

    An in-memory SQLite database lives on a single shared connection. A file
    database gets a connection per session so worker threads never share one.
    """
    if database_url.startswith("sqlite"):
        if make_url(database_url).database in (None, "", ":memory:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=20,
        max_overflow=30,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_database_url())
    return _engine


def get_session_local() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """Yield a session bound to the process engine; closed on exit."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run a block as one unit of work.

    Commits on success. Any error rolls back the whole unit; storage errors
    surface as PersistenceError.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("transaction_rolled_back", error=str(e))
        raise PersistenceError(str(e)) from e
    except BaseException:
        db.rollback()
        raise


def init_database(engine: Optional[Engine] = None) -> None:
    """Create all tables."""
    # registers every table on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("database_initialized")


def drop_database(engine: Optional[Engine] = None) -> None:
    """Drop every control tower table."""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine or get_engine())
    logger.warning("database_dropped")
