"""
Shared store-error handling for repositories and the services that use them.

CRITICAL: Driver and SQLAlchemy errors never leave the engine as-is. A unit
of work either succeeds, raises a domain error, or raises PersistenceError
carrying a correlation id that is also written to the logs.
"""

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gymaccess.database.session import run_with_retry
from gymaccess.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_unit_of_work(session: Session, operation: str, work: Callable[[], T]) -> T:
    """
    Execute one transactional unit of work against the store.

    The work callable owns its commit. A transient disconnect is retried once
    from a rolled-back session; any other store failure becomes a
    PersistenceError.

    Args:
        session: Request-scoped database session
        operation: Name used in logs (e.g. "check_in")
        work: Callable performing queries and the final commit

    Returns:
        Whatever work returns

    Raises:
        PersistenceError: On any unrecovered store failure
    """
    try:
        return run_with_retry(session, work)
    except SQLAlchemyError as e:
        session.rollback()
        error = PersistenceError(cause=e)
        logger.error(
            "Store operation failed",
            extra={
                "operation": operation,
                "correlation_id": error.correlation_id,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        raise error from e
