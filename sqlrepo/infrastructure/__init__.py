"""
Infrastructure package for sqlrepo.

Centralizes database connectivity concerns (engine construction, pooling,
pool instrumentation). Keep this layer focused on I/O and resource
management, decoupled from repository logic.
"""

from sqlrepo.infrastructure.database import Database, build_url
from sqlrepo.infrastructure.pool import MonitoredQueuePool, PoolCounters, PoolMonitor

__all__ = [
    "Database",
    "MonitoredQueuePool",
    "PoolCounters",
    "PoolMonitor",
    "build_url",
]
