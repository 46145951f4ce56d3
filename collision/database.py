# collision/database.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from collision.core.config import settings
from collision.models import Base  # keep import for ORM usage

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def _normalize_url(url: str) -> str:
    # Some hosts hand out postgres://; SQLAlchemy expects postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _build_engine(url: str):
    url = _normalize_url(url)
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)
    return create_engine(url, pool_pre_ping=True, future=True)


def configure(url: str | None = None):
    """(Re)bind the engine and session factory, e.g. for tests."""
    global _engine, _SessionLocal
    if not (url or settings.DATABASE_URL):
        raise RuntimeError("DATABASE_URL is not set")
    _engine = _build_engine(url or settings.DATABASE_URL)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine, future=True)
    return _engine


def get_engine():
    if _engine is None:
        configure()
    return _engine


def get_sessionmaker():
    if _SessionLocal is None:
        get_engine()
    return _SessionLocal


@contextmanager
def db_session() -> Generator[Session, None, None]:
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Generator[Session, None, None]:
    with db_session() as db:
        yield db


@contextmanager
def atomic(db: Session) -> Generator[Session, None, None]:
    """One unit of work on an existing session: commit on success, rollback on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Schema ensured on %s", engine.url.render_as_string(hide_password=True))
