"""
Optimistic Locking Infrastructure
Version-based concurrency control for ledger and wallet writes
"""

import logging
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, Optional, Type, TypeVar
from sqlalchemy import update, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import TransactionFailedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OptimisticLockingError(Exception):
    """Raised when optimistic locking fails due to version conflict"""
    pass


class OptimisticLockManager:
    """
    Manager for optimistic locking operations
    Handles version-based updates and conflict detection
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Any],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: Optional[int] = None
    ) -> bool:
        """
        Perform version-controlled update (compare-and-swap on `version`)

        Args:
            model_class: SQLAlchemy model class with a version column
            entity_id: Primary key value
            updates: Dictionary of field updates
            current_version: Expected current version (fetched if not provided)

        Returns:
            bool: True if update successful

        Raises:
            OptimisticLockingError: If version conflict detected
        """
        try:
            if current_version is None:
                current_version = self.session.execute(
                    select(model_class.version).where(model_class.id == entity_id)
                ).scalar_one_or_none()

                if current_version is None:
                    raise ValueError(f"Entity {model_class.__name__} with id {entity_id} not found")

            update_values = {
                **updates,
                'version': current_version + 1,
                'updated_at': get_naive_utc_now()
            }

            stmt = update(model_class).where(
                model_class.id == entity_id,
                model_class.version == current_version
            ).values(update_values).execution_options(synchronize_session=False)

            result = self.session.execute(stmt)

            if result.rowcount == 0:
                logger.warning(
                    f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                    f"expected_version={current_version}"
                )
                raise OptimisticLockingError(
                    f"Version conflict for {model_class.__name__} id={entity_id}. "
                    f"Expected version {current_version} but entity was modified by another process."
                )

            logger.debug(
                f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
                f"v{current_version} → v{current_version + 1}"
            )
            return True

        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise

    def reload(self, model_class: Type[T], entity_id: Any) -> Optional[T]:
        """Fetch an entity bypassing the identity map so version and columns are current"""
        return self.session.execute(
            select(model_class)
            .where(model_class.id == entity_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()


@dataclass
class RetryPolicy:
    """
    Bounded retry for optimistic conflicts: fixed backoff, injectable sleep.

    max_attempts counts every try including the first.
    """

    max_attempts: int = field(default_factory=lambda: Config.LEDGER_MAX_ATTEMPTS)
    retry_delay: float = field(default_factory=lambda: Config.LEDGER_RETRY_DELAY_SECONDS)
    sleep: Callable[[float], None] = time.sleep

    def run(self, operation: Callable[[int], T], label: str = "operation") -> T:
        """
        Call operation(attempt) until it stops raising OptimisticLockingError.

        Any other exception propagates immediately. Exhaustion surfaces as
        TransactionFailedError.
        """
        last_error: Optional[OptimisticLockingError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(attempt)
            except OptimisticLockingError as e:
                last_error = e
                if attempt < self.max_attempts:
                    logger.info(
                        f"🔄 OPTIMISTIC_RETRY: {label} attempt {attempt}/{self.max_attempts} "
                        f"conflicted, retrying in {self.retry_delay}s"
                    )
                    self.sleep(self.retry_delay)

        logger.error(
            f"❌ OPTIMISTIC_RETRY_EXHAUSTED: {label} failed after {self.max_attempts} attempts: {last_error}"
        )
        raise TransactionFailedError(
            f"Transaction failed after {self.max_attempts} attempts due to concurrent updates"
        ) from last_error


def with_optimistic_locking(policy: Optional[RetryPolicy] = None):
    """
    Decorator form of RetryPolicy.run for methods whose whole body is one attempt

    The wrapped callable is re-invoked as-is on conflict.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            active_policy = policy or RetryPolicy()
            return active_policy.run(lambda _attempt: func(*args, **kwargs), label=func.__name__)
        return wrapper
    return decorator
