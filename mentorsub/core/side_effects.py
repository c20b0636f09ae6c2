"""
After-commit side effects.

External calls (role grants, course membership, notifications) must never be
part of a local transaction: they run only once the session's outermost
transaction has committed, and are dropped if it rolls back. A failing
callback is logged and does not affect the committed ledger state; callbacks
normally just enqueue a retryable Celery task.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

logger = logging.getLogger(__name__)

_PENDING_KEY = "mentorsub.after_commit"


def after_commit(db: Session, callback: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Register ``callback(*args, **kwargs)`` to run after ``db`` commits."""
    db.info.setdefault(_PENDING_KEY, []).append((callback, args, kwargs))


def pending_count(db: Session) -> int:
    """Number of callbacks waiting for the next commit."""
    return len(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _run_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, [])
    for callback, args, kwargs in pending:
        name = getattr(callback, "__qualname__", repr(callback))
        try:
            callback(*args, **kwargs)
        except Exception:
            logger.exception("after_commit_failed: callback=%s args=%s", name, args)


@event.listens_for(Session, "after_soft_rollback")
def _discard_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    # Savepoint rollbacks keep callbacks registered outside the savepoint.
    if previous_transaction.parent is None:
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.info("after_commit_discarded: count=%d", len(dropped))
