"""
sqlrepo - connection management and generic repositories for relational databases.

This package wraps SQLAlchemy's asyncio engine with:

- A connection manager (`Database`) that applies pool limits, reports pool
  statistics and runs health checks
- A type-parameterized `Repository` offering CRUD, filtered queries,
  counting, pagination and transactions for any mapped record type
- A classified error taxonomy rooted at `DataAccessError`
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from sqlrepo.config import DatabaseSettings, get_settings
from sqlrepo.context import Context
from sqlrepo.domain.models import Base, TimestampMixin, UTCDateTime
from sqlrepo.errors import (
    ConstraintViolationError,
    DataAccessError,
    DatabaseConnectionError,
    DegradedStateError,
    InvalidArgumentError,
    InvalidConfigurationError,
    NotConnectedError,
    NotFoundError,
    OperationTimeoutError,
    StorageError,
)
from sqlrepo.infrastructure.database import Database
from sqlrepo.repository import Page, Repository
from sqlrepo.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "DatabaseSettings",
    "get_settings",
    # Connection management
    "Context",
    "Database",
    # Repositories
    "Base",
    "Page",
    "Repository",
    "TimestampMixin",
    "UTCDateTime",
    # Errors
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
    # Logging
    "configure_logging",
    "get_logger",
]
