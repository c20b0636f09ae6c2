"""
Session context manager for Celery workers.

Mirrors get_db() but commits on clean exit.
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from mentorsub.core.database import SessionLocal


@contextmanager
def get_sync_db() -> Generator[Session, None, None]:
    """
    Transactional session scope for workers and scripts.

    Usage:
        with get_sync_db() as db:
            db.execute(...)
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
