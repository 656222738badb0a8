"""
Database Session Management
===========================

SQLAlchemy engine and session handling for the metadata store.
SQLite by default (one file under the data directory).
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .models import Base

def create_engine_for_url(database_url: str) -> Engine:
    """Create an engine; SQLite files get their parent directory created"""
    echo = os.environ.get("SQL_ECHO", "false").lower() == "true"
    if database_url.startswith("sqlite"):
        db_file = database_url.split("sqlite:///", 1)[-1]
        if db_file and db_file != ":memory:" and not db_file.startswith(":"):
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    return create_engine(database_url, pool_pre_ping=True, echo=echo)


def init_db(engine: Engine):
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for a unit of work.

    Usage:
        with session_scope(factory) as db:
            db.merge(StoredDocument(key=..., value=...))
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
