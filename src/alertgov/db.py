"""
Database engine and session management
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models.tables import Base

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite:///data/db/alertgov.db"


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; SQLite files get their directory created on demand."""
    url = url or os.getenv("ALERTGOV_DB_URL", DEFAULT_DB_URL)
    echo = os.getenv("ALERTGOV_DB_ECHO", "false").lower() == "true"
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every thread sees the same in-memory DB.
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        db_path = url.split("///", 1)[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
            echo=echo,
        )
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20, echo=echo)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all governance tables"""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {engine.url}")


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Commit on success, roll back on error, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
