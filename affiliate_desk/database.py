"""Engine, session factory and transaction helpers for the affiliate desk."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

LOCAL_SQLITE_PATH = Path("data/affiliate.db")
LOCAL_SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
LOCAL_SQLITE_URL = f"sqlite:///{LOCAL_SQLITE_PATH}"

DATABASE_URL = os.getenv("AFFILIATE_DATABASE_URL", LOCAL_SQLITE_URL)


def _build_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


def _connect(url: str) -> tuple[str, Engine]:
    """Open the configured database; in development an unreachable server falls back to local SQLite."""

    candidate = _build_engine(url)
    try:
        with candidate.connect():
            pass
    except OperationalError as exc:  # pragma: no cover - environment dependent
        logger.error("Could not connect to database at %r: %s", url, exc)
        if os.getenv("ENVIRONMENT", "development").lower() != "development" or url == LOCAL_SQLITE_URL:
            raise
        logger.warning("Falling back to SQLite for local development at %s", LOCAL_SQLITE_URL)
        return LOCAL_SQLITE_URL, _build_engine(LOCAL_SQLITE_URL)
    return url, candidate


DATABASE_URL, engine = _connect(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a database session."""

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Commit the session when the block succeeds, roll back when it raises."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def init_db() -> None:
    """Ensure database tables exist and create the default admin user if needed."""

    from affiliate_desk import models  # noqa: F401  (import ensures model metadata is registered)
    from affiliate_desk.auth import User

    Base.metadata.create_all(bind=engine, checkfirst=True)

    session = SessionLocal()
    try:
        admin_count = session.query(User).filter(User.username == "admin").count()
        if admin_count == 0:
            admin_user = User.create_user("admin", "admin", role="admin")
            session.add(admin_user)
            session.commit()
            logger.info("Created default admin user (username: admin, role: admin)")
        else:
            logger.debug("Admin user already exists, skipping creation")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
