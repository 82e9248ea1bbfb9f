"""
Utilities package for sqlrepo.

Exports shared helpers for logging and other cross-cutting concerns.
"""

from sqlrepo.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
