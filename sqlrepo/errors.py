"""
Error taxonomy for sqlrepo.

Every failure surfaced by the connection manager or a repository is a
`DataAccessError` subclass carrying the name of the attempted operation.
SQLAlchemy exceptions are classified by `translate_errors` and chained as the
`__cause__` so the backend message is never lost.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import exc as sa_exc


class DataAccessError(Exception):
    """Base class for all sqlrepo errors."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}" if operation else message)


class NotFoundError(DataAccessError):
    """A lookup matched zero rows where exactly one was expected."""


class NotConnectedError(DataAccessError):
    """The manager has no live engine (never connected, or already closed)."""


class InvalidConfigurationError(DataAccessError, ValueError):
    """Construction was given an unusable configuration."""


class InvalidArgumentError(DataAccessError, ValueError):
    """An operation was called with arguments it cannot act on."""


class DatabaseConnectionError(DataAccessError):
    """A session could not be established or was lost."""


class DegradedStateError(DataAccessError):
    """The server answers but the pool holds no open connections."""


class StorageError(DataAccessError):
    """Catch-all for backend failures."""


class ConstraintViolationError(StorageError):
    """The backend rejected a write because of a unique or other constraint."""


class OperationTimeoutError(StorageError, TimeoutError):
    """The context deadline expired before the round trip finished."""


def classify(error: BaseException, operation: str) -> DataAccessError:
    """
    Map an exception raised by SQLAlchemy or the driver onto the taxonomy.
    """
    if isinstance(error, DataAccessError):
        return error
    message = str(getattr(error, "orig", None) or error)
    if isinstance(error, sa_exc.NoResultFound):
        return NotFoundError("record not found", operation)
    if isinstance(error, sa_exc.IntegrityError):
        return ConstraintViolationError(message, operation)
    if isinstance(error, sa_exc.TimeoutError):
        # Pool checkout timed out: no connection could be handed out.
        return DatabaseConnectionError(message, operation)
    if isinstance(error, sa_exc.DisconnectionError):
        return DatabaseConnectionError(message, operation)
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return DatabaseConnectionError(message, operation)
    if isinstance(error, TimeoutError):
        return OperationTimeoutError("deadline exceeded", operation)
    if isinstance(error, OSError):
        return DatabaseConnectionError(message, operation)
    return StorageError(message, operation)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """
    Re-raise SQLAlchemy and timeout errors as `DataAccessError` subclasses.

    Errors that already belong to the taxonomy, and anything that is not a
    database or timeout failure, pass through unchanged.
    """
    try:
        yield
    except DataAccessError:
        raise
    except (sa_exc.SQLAlchemyError, TimeoutError, OSError) as error:
        raise classify(error, operation) from error


__all__ = [
    "ConstraintViolationError",
    "DataAccessError",
    "DatabaseConnectionError",
    "DegradedStateError",
    "InvalidArgumentError",
    "InvalidConfigurationError",
    "NotConnectedError",
    "NotFoundError",
    "OperationTimeoutError",
    "StorageError",
    "classify",
    "translate_errors",
]
