"""Database engine and session factory.

WHAT:
    Sync SQLAlchemy engine for DATABASE_URL, `SessionLocal`, and a
    `get_sync_session()` context manager for workers and scripts.

WHY:
    Every job run owns exactly one session; the persistence pipeline commits
    or rolls back on that session, so no other component needs its own.
    Warehouse writes use dialect upserts, so only PostgreSQL (production) and
    SQLite (tests, local runs) are supported.

USAGE:
    from syncengine.database import get_sync_session

    with get_sync_session() as db:
        result = await execute_run(db, run)

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - syncengine/services/persistence.py (transaction boundary)
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def resolve_database_url() -> str:
    """DATABASE_URL from the environment (or backend/.env), normalized for SQLAlchemy.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        from syncengine.utils.env import load_env_file
        load_env_file()
        url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; export it or add it to backend/.env.")

    # Heroku-style scheme is not accepted by SQLAlchemy 2.x
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def build_engine(url: str) -> Engine:
    """Engine for the sync worker.

    The pool is sized for the worker's concurrent runs (WorkerSettings.max_jobs)
    plus headroom. SQLite gets a plain engine; it has no pool_size/max_overflow.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=10,
        max_overflow=5,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


DATABASE_URL = resolve_database_url()
engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

logger.debug("[DB] Engine ready (dialect=%s)", engine.dialect.name)


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Session closed on exit; committing is the caller's job."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
