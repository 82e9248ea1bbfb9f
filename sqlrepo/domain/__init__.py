"""
Domain package for sqlrepo.

Exports the declarative helpers record types can build on.
"""

from sqlrepo.domain.models import Base, TimestampMixin, UTCDateTime, utcnow

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
]
