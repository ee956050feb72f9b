"""Shared helpers for the SQLAlchemy-backed repositories."""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

from pagevault_mcp.exceptions import ErrorCode, StorageError

logger = logging.getLogger(__name__)


@contextmanager
def storage_operation(operation: str, write: bool = True) -> Iterator[None]:
    """Translate SQLAlchemy failures inside the block into StorageError.

    The session context manager has already rolled the transaction back by
    the time the exception reaches this point.
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage operation '{operation}' failed: {e}")
        raise StorageError(
            f"Failed to {operation.replace('_', ' ')}",
            operation=operation,
            code=ErrorCode.STORAGE_WRITE_FAILED if write else ErrorCode.STORAGE_READ_FAILED,
            original_error=e,
        ) from e
