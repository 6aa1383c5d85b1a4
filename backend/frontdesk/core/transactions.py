"""
Database transaction management utilities.

Provides a context manager for safe database transactions
with automatic rollback on error.

Usage:
    with transaction(db):
        integration.status = PmsIntegrationStatus.ACTIVE
        integration.last_error = None
        # Automatically commits on success, rolls back on error
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session


logger = logging.getLogger(__name__)


@contextmanager
def transaction(db: Session) -> Generator[Session, None, None]:
    """
    Context manager for database transactions with automatic rollback.

    Commits on success, rolls back and re-raises on error.

    Args:
        db: SQLAlchemy database session

    Yields:
        The same database session
    """
    try:
        yield db
        db.commit()
        logger.debug("Transaction committed")
    except Exception as e:
        db.rollback()
        logger.error(f"Transaction rolled back due to error: {type(e).__name__}")
        raise
