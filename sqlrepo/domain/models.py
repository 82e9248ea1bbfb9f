"""
Declarative building blocks for record types.

Any SQLAlchemy mapped class with a primary key can be used with a
`Repository`; `Base` and `TimestampMixin` are conveniences, not requirements.
Timestamp columns are filled in UTC by the session hook installed by
`Database` (see `sqlrepo.infrastructure.database`).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

CREATED_AT = "created_at"
UPDATED_AT = "updated_at"


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalise `value` to an aware UTC datetime. Naive values are taken to be
    UTC already.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as an aware UTC datetime.

    Backends without time zone storage (SQLite, MySQL ``DATETIME``) hand back
    naive values; those are read as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Dialect) -> Any:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        return as_utc(value)


class Base(DeclarativeBase):
    """
    Default declarative base for sqlrepo record types.
    """


class TimestampMixin:
    """
    Adds `created_at` / `updated_at` columns.

    `created_at` is set once when the row is first flushed; `updated_at` is
    refreshed on every flush that changes the row. Both read back as aware
    UTC datetimes on every backend.
    """

    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)


__all__ = [
    "Base",
    "CREATED_AT",
    "TimestampMixin",
    "UPDATED_AT",
    "UTCDateTime",
    "as_utc",
    "utcnow",
]
