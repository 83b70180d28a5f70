"""Atomic transaction utilities for booking, escrow and ledger operations"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generator, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from database import SessionLocal

logger = logging.getLogger(__name__)

_AFTER_COMMIT_KEY = "after_commit_callbacks"


def run_after_commit(session: Session, callback: Callable[[], Any]) -> None:
    """
    Queue a callback to run once the outermost atomic_transaction commits.

    Callbacks are dropped on rollback, so nothing observes a write that never
    became durable.
    """
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def _drain_after_commit(session: Session) -> List[Callable[[], Any]]:
    return session.info.pop(_AFTER_COMMIT_KEY, [])


def _fire_after_commit(callbacks: List[Callable[[], Any]]) -> None:
    for callback in callbacks:
        try:
            callback()
        except Exception as e:
            logger.error(f"❌ AFTER_COMMIT_CALLBACK_FAILED: {e}", exc_info=True)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Nested use on the same session defers the commit to the outermost block;
    any error rolls back the whole unit of work regardless of depth.
    """
    if session is None:
        session = SessionLocal()
        logger.debug("Created new sync session for atomic transaction")
        try:
            with atomic_transaction(session) as owned:
                yield owned
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
            _fire_after_commit(_drain_after_commit(session))
        else:
            logger.debug(
                f"Nested sync transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost"
            )

    except Exception as e:
        session.rollback()
        _drain_after_commit(session)
        logger.debug(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def lock_row_for_update(session: Session, model_class: Any, entity_id: Any) -> Optional[Any]:
    """
    Load a row under an exclusive row lock (SELECT ... FOR UPDATE).

    Backends without row locks (SQLite) ignore the clause; their writers are
    already serialized at the database level.
    """
    entity = session.execute(
        select(model_class)
        .where(model_class.id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if entity is not None:
        logger.debug(f"🔒 Acquired row lock on {model_class.__name__} id={entity_id}")
    return entity
