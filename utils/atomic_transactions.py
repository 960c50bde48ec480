"""Atomic transaction utilities for treasury persistence"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Synchronous context manager for a single atomic database transaction.

    Commits when the block exits normally, rolls back and re-raises on any
    error, and always closes the session. Sessions are short-lived on purpose:
    callers never hold one across an await.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.debug(f"Atomic transaction rolled back due to error: {e}")
        raise
    finally:
        session.close()
