"""
Database configuration and session management.

This module sets up a SQLAlchemy engine backing the document record store.
It points at an SQLite database by default; switch the database URL via the
`DATABASE_URL` environment variable.

The sessionmaker pattern gives each record store call its own short-lived
session, so timer threads that run scheduled workflow advances never share a
session with request handlers.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Default to a local SQLite database.  For production use, replace with Postgres or MySQL.
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./telehealth.db")


def make_engine(url: str) -> Engine:
    # The `check_same_thread` argument is needed for SQLite when timer threads write records.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine(DATABASE_URL)

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative class definitions.
Base = declarative_base()


@contextmanager
def get_db(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits when the block exits cleanly, rolls back and re-raises otherwise,
    and always closes the session.

    Example:
        with get_db() as db:
            # use db session here
    """
    db: Session = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
