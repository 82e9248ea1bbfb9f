"""
Connection pool instrumentation.

SQLAlchemy owns the pool; this module only observes it. `PoolMonitor`
listens to pool events to keep the counters reported by `Database.stats()`
and retires connections that outlived `conn_max_lifetime` or sat idle longer
than `conn_max_idle_time`. `MonitoredQueuePool` adds wait accounting, which
the pool event API does not expose.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.exc import DisconnectionError
from sqlalchemy.pool import AsyncAdaptedQueuePool, Pool

from sqlrepo.utils.logging import get_logger

log = get_logger(__name__)

_BORN_AT = "sqlrepo_born_at"
_RETURNED_AT = "sqlrepo_returned_at"


class MonitoredQueuePool(AsyncAdaptedQueuePool):
    """
    asyncio queue pool that records how often, and for how long, callers
    waited for a connection because the pool was saturated.
    """

    def __init__(
        self,
        creator: Any,
        pool_size: int = 5,
        max_overflow: int = 10,
        timeout: float = 30.0,
        use_lifo: bool = False,
        **kw: Any,
    ) -> None:
        super().__init__(
            creator,
            pool_size=pool_size,
            max_overflow=max_overflow,
            timeout=timeout,
            use_lifo=use_lifo,
            **kw,
        )
        self.max_connections = pool_size + max_overflow
        self.wait_count = 0
        self.wait_seconds = 0.0

    def _do_get(self) -> Any:
        if self.checkedout() < self.max_connections:
            return super()._do_get()
        started = time.monotonic()
        try:
            return super()._do_get()
        finally:
            self.wait_count += 1
            self.wait_seconds += time.monotonic() - started


@dataclass
class PoolCounters:
    """
    Snapshot of pool activity.
    """

    max_open_connections: int
    open_connections: int = 0
    in_use: int = 0
    wait_count: int = 0
    wait_duration: float = 0.0
    max_idle_closed: int = 0
    max_lifetime_closed: int = 0

    @property
    def idle(self) -> int:
        return max(self.open_connections - self.in_use, 0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_open_connections": self.max_open_connections,
            "open_connections": self.open_connections,
            "in_use": self.in_use,
            "idle": self.idle,
            "wait_count": self.wait_count,
            "wait_duration": self.wait_duration,
            "max_idle_closed": self.max_idle_closed,
            "max_lifetime_closed": self.max_lifetime_closed,
        }


class PoolMonitor:
    """
    Event-driven bookkeeping for one SQLAlchemy pool.

    Parameters
    ----------
    max_open : int
        Upper bound on simultaneously open connections (reported as-is).
    max_lifetime : timedelta | None
        Connections older than this are discarded on checkout.
    max_idle_time : timedelta | None
        Connections idle longer than this are discarded on checkout.
    """

    def __init__(
        self,
        max_open: int,
        max_lifetime: Optional[timedelta] = None,
        max_idle_time: Optional[timedelta] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._counters = PoolCounters(max_open_connections=max_open)
        self._max_lifetime = max_lifetime.total_seconds() if max_lifetime else None
        self._max_idle_time = max_idle_time.total_seconds() if max_idle_time else None
        self._pool: Optional[Pool] = None

    def attach(self, pool: Pool) -> None:
        """Start listening to `pool` events."""
        event.listen(pool, "connect", self._on_connect)
        event.listen(pool, "checkout", self._on_checkout)
        event.listen(pool, "checkin", self._on_checkin)
        event.listen(pool, "close", self._on_close)
        event.listen(pool, "close_detached", self._on_close_detached)
        self._pool = pool

    def snapshot(self, pool: Optional[Pool] = None) -> PoolCounters:
        """
        Copy of the current counters, including wait figures when the pool
        tracks them.
        """
        pool = pool if pool is not None else self._pool
        with self._lock:
            counters = PoolCounters(**vars(self._counters))
        if isinstance(pool, MonitoredQueuePool):
            counters.wait_count = pool.wait_count
            counters.wait_duration = pool.wait_seconds
        return counters

    # Event handlers -----------------------------------------------------

    def _on_connect(self, dbapi_connection: Any, record: Any) -> None:
        now = time.monotonic()
        record.info[_BORN_AT] = now
        record.info[_RETURNED_AT] = now
        with self._lock:
            self._counters.open_connections += 1

    def _on_checkout(self, dbapi_connection: Any, record: Any, proxy: Any) -> None:
        now = time.monotonic()
        born_at = record.info.get(_BORN_AT, now)
        returned_at = record.info.get(_RETURNED_AT, now)

        if self._max_lifetime is not None and now - born_at >= self._max_lifetime:
            with self._lock:
                self._counters.max_lifetime_closed += 1
            log.debug("Retiring pooled connection past max lifetime")
            raise DisconnectionError("connection exceeded max lifetime")
        if self._max_idle_time is not None and now - returned_at >= self._max_idle_time:
            with self._lock:
                self._counters.max_idle_closed += 1
            log.debug("Retiring pooled connection past max idle time")
            raise DisconnectionError("connection exceeded max idle time")

        with self._lock:
            self._counters.in_use += 1

    def _on_checkin(self, dbapi_connection: Any, record: Any) -> None:
        record.info[_RETURNED_AT] = time.monotonic()
        with self._lock:
            self._counters.in_use = max(self._counters.in_use - 1, 0)

    def _on_close(self, dbapi_connection: Any, record: Any) -> None:
        with self._lock:
            self._counters.open_connections = max(self._counters.open_connections - 1, 0)

    def _on_close_detached(self, dbapi_connection: Any) -> None:
        with self._lock:
            self._counters.open_connections = max(self._counters.open_connections - 1, 0)


__all__ = ["MonitoredQueuePool", "PoolCounters", "PoolMonitor"]
