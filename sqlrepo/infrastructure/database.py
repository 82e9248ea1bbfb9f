"""
Connection manager for sqlrepo.

`Database` owns one SQLAlchemy `AsyncEngine` (and therefore one connection
pool) per process or shard. It applies the pool limits from
`DatabaseSettings` once, at construction, and exposes liveness checks, pool
statistics, transaction scoping and schema synchronisation. Repositories
share it; they never own the engine.

Usage:
    settings = DatabaseSettings(driver="postgres", dsn="postgresql://app@db/app")
    async with await Database.connect(settings) as db:
        await db.auto_migrate(User)
        users = Repository(User, db)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    TypeVar,
)

from sqlalchemy import MetaData, Table, event, inspect as sa_inspect, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, NoInspectionAvailable, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Mapper, Session
from sqlalchemy.pool import StaticPool
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sqlrepo.config import DatabaseSettings
from sqlrepo.context import Context
from sqlrepo.domain.models import CREATED_AT, UPDATED_AT, utcnow
from sqlrepo.errors import (
    DatabaseConnectionError,
    DegradedStateError,
    InvalidConfigurationError,
    NotConnectedError,
    classify,
    translate_errors,
)
from sqlrepo.infrastructure.pool import MonitoredQueuePool, PoolMonitor
from sqlrepo.utils.logging import get_logger, level_number

log = get_logger(__name__)

T = TypeVar("T")

ENGINE_LOGGING_NAME = "sqlrepo"

# Async SQLAlchemy dialect used for each supported driver identifier.
DRIVER_DIALECTS: Dict[str, str] = {
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


class TimestampingSession(Session):
    """
    Session that stamps `created_at` / `updated_at` on flush using the clock
    stored in `session.info["now"]`.
    """


def _has_attribute(obj: Any, key: str) -> bool:
    return key in sa_inspect(obj).mapper.attrs


@event.listens_for(TimestampingSession, "before_flush")
def _stamp_timestamps(session: Session, flush_context: Any, instances: Any) -> None:
    now = session.info.get("now", utcnow)()
    for obj in session.new:
        if _has_attribute(obj, CREATED_AT) and getattr(obj, CREATED_AT) is None:
            setattr(obj, CREATED_AT, now)
        if _has_attribute(obj, UPDATED_AT):
            setattr(obj, UPDATED_AT, now)
    for obj in session.dirty:
        if _has_attribute(obj, UPDATED_AT) and session.is_modified(obj, include_collections=False):
            setattr(obj, UPDATED_AT, now)


def build_url(settings: DatabaseSettings, dialect: Optional[str] = None) -> URL:
    """
    Compose the SQLAlchemy URL for `settings`.

    A DSN that already names a driver (``postgresql+asyncpg://...``) is used
    verbatim unless `dialect` overrides it. A bare SQLite DSN is treated as a
    file path (or ``:memory:``).
    """
    if settings.driver not in DRIVER_DIALECTS:
        raise InvalidConfigurationError(f"unsupported driver {settings.driver!r}", "connect")
    target = dialect or DRIVER_DIALECTS[settings.driver]
    dsn = settings.dsn.strip()
    if not dsn:
        raise InvalidConfigurationError("dsn must not be empty", "connect")

    if "://" in dsn:
        try:
            url = make_url(dsn)
        except ArgumentError as error:
            raise InvalidConfigurationError(str(error), "connect") from error
        if dialect is None and "+" in url.drivername:
            return url
        return url.set(drivername=target)

    if settings.driver == "sqlite":
        return URL.create(target, database=dsn)
    raise InvalidConfigurationError(
        f"dsn for driver {settings.driver!r} must be a URL", "connect"
    )


def is_memory_sqlite(url: URL) -> bool:
    if url.get_backend_name() != "sqlite":
        return False
    return url.database in (None, "", ":memory:") or url.query.get("mode") == "memory"


def _check_sqlite_directory(url: URL) -> None:
    """
    Fail fast when a SQLite file would be created in a missing directory.

    aiosqlite connects on a worker thread; a failed open leaves that thread
    reporting back to the event loop after `connect` has already returned.
    """
    if url.get_backend_name() != "sqlite" or is_memory_sqlite(url):
        return
    database = url.database or ""
    if database.startswith("file:"):
        return
    parent = Path(database).expanduser().parent
    if not parent.is_dir():
        raise DatabaseConnectionError(
            f"failed to connect to database: directory {parent} does not exist", "connect"
        )


def _create_engine(settings: DatabaseSettings, url: URL) -> tuple[AsyncEngine, PoolMonitor]:
    if is_memory_sqlite(url):
        log.warning(
            "In-memory SQLite shares a single connection; pool sizing is ignored",
            extra={"url": url.render_as_string(hide_password=True)},
        )
        engine = create_async_engine(
            url, poolclass=StaticPool, logging_name=ENGINE_LOGGING_NAME
        )
        # One shared connection holds the whole database; never retire it.
        monitor = PoolMonitor(max_open=1)
    else:
        max_open = settings.max_open_conns
        pool_size = min(settings.max_idle_conns, max_open)
        engine = create_async_engine(
            url,
            poolclass=MonitoredQueuePool,
            pool_size=pool_size,
            max_overflow=max_open - pool_size,
            pool_timeout=settings.pool_timeout,
            logging_name=ENGINE_LOGGING_NAME,
        )
        monitor = PoolMonitor(
            max_open=max_open,
            max_lifetime=settings.conn_max_lifetime,
            max_idle_time=settings.conn_max_idle_time,
        )
    monitor.attach(engine.sync_engine.pool)
    get_logger(f"sqlalchemy.engine.Engine.{ENGINE_LOGGING_NAME}").setLevel(
        level_number(settings.log_level)
    )
    return engine, monitor


async def _probe(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


def _retrying_probe(attempts: int) -> Callable[[AsyncEngine], Awaitable[None]]:
    """
    Wrap `_probe` with retry for transient connection failures.

    Retries up to `attempts` times in total with exponential backoff.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((SQLAlchemyError, OSError)),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )(_probe)


async def _rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except SQLAlchemyError as error:
        log.error("Transaction rollback failed", exc_info=True)
        raise classify(error, "transaction") from error


@dataclass
class _EngineHandle:
    """State shared by a `Database` and all of its views."""

    engine: Optional[AsyncEngine]
    sessionmaker: async_sessionmaker[AsyncSession]
    monitor: PoolMonitor


class Database:
    """
    Connection manager wrapping a pooled SQLAlchemy async engine.

    Instances are created with `Database.connect`. `with_context` and
    `transaction` hand out views that share the same engine and settings.
    """

    def __init__(
        self,
        handle: _EngineHandle,
        settings: DatabaseSettings,
        context: Optional[Context] = None,
        bound_session: Optional[AsyncSession] = None,
    ) -> None:
        self._handle = handle
        self._settings = settings
        self._context = context or Context.background()
        self._bound_session = bound_session

    @classmethod
    async def connect(
        cls,
        settings: Optional[DatabaseSettings],
        *,
        dialect: Optional[str] = None,
        context: Optional[Context] = None,
    ) -> "Database":
        """
        Open the engine, apply pool limits and verify that a session can be
        established.

        Parameters
        ----------
        settings : DatabaseSettings
            Connection and pool configuration.
        dialect : str, optional
            SQLAlchemy ``dialect+driver`` overriding the one derived from
            ``settings.driver`` (e.g. ``"postgresql+psycopg"``).
        context : Context, optional
            Default context for operations on the returned manager.

        Raises
        ------
        InvalidConfigurationError
            If `settings` is missing or cannot be turned into an engine.
        DatabaseConnectionError
            If no session could be established.
        """
        if settings is None:
            raise InvalidConfigurationError("settings must not be None", "connect")

        url = build_url(settings, dialect)
        _check_sqlite_directory(url)
        try:
            engine, monitor = _create_engine(settings, url)
        except (ArgumentError, ImportError, TypeError) as error:
            raise InvalidConfigurationError(str(error), "connect") from error

        try:
            await _retrying_probe(settings.connect_attempts)(engine)
        except (SQLAlchemyError, OSError) as error:
            await engine.dispose()
            raise DatabaseConnectionError(
                f"failed to connect to database: {getattr(error, 'orig', None) or error}",
                "connect",
            ) from error

        sessionmaker = async_sessionmaker(
            engine,
            expire_on_commit=False,
            sync_session_class=TimestampingSession,
            info={"now": utcnow},
        )
        log.info(
            "Connected to database",
            extra={
                "url": url.render_as_string(hide_password=True),
                "max_open_connections": monitor.snapshot().max_open_connections,
            },
        )
        return cls(_EngineHandle(engine, sessionmaker, monitor), settings, context)

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.closed and self._bound_session is None:
            await self.close()

    # Properties ------------------------------------------------------------

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def context(self) -> Context:
        return self._context

    @property
    def closed(self) -> bool:
        return self._handle.engine is None

    @property
    def in_transaction(self) -> bool:
        return self._bound_session is not None

    @property
    def engine(self) -> AsyncEngine:
        return self._require_engine("engine")

    def _require_engine(self, operation: str) -> AsyncEngine:
        engine = self._handle.engine
        if engine is None:
            raise NotConnectedError("database is not connected", operation)
        return engine

    # Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        """
        Dispose of the engine and its pool.

        Raises
        ------
        NotConnectedError
            If the manager is already closed.
        """
        engine = self._require_engine("close")
        self._handle.engine = None
        await engine.dispose()
        log.info("Database connection closed")

    async def ping(self, ctx: Optional[Context] = None) -> None:
        """
        Round-trip a trivial statement to prove the server is reachable.

        Raises
        ------
        NotConnectedError
            If the manager is closed.
        DatabaseConnectionError
            If the statement fails.
        """
        engine = self._require_engine("ping")
        async with (ctx or self._context).scope("ping"):
            try:
                await _probe(engine)
            except (SQLAlchemyError, OSError) as error:
                raise DatabaseConnectionError(
                    f"database ping failed: {getattr(error, 'orig', None) or error}", "ping"
                ) from error

    async def health_check(self, ctx: Optional[Context] = None) -> None:
        """
        Ping, then fail with DegradedStateError if the pool holds no open
        connections even though the ping succeeded.
        """
        await self.ping(ctx)
        stats = self.stats()
        if stats["open_connections"] == 0:
            log.warning("Database pool has no open connections", extra=stats)
            raise DegradedStateError("no open connections", "health_check")

    def stats(self) -> Dict[str, Any]:
        """
        Snapshot of the pool counters.

        Keys: max_open_connections, open_connections, in_use, idle,
        wait_count, wait_duration (seconds), max_idle_closed,
        max_lifetime_closed.
        """
        engine = self._require_engine("stats")
        return self._handle.monitor.snapshot(engine.sync_engine.pool).as_dict()

    # Scoping ---------------------------------------------------------------

    def with_context(self, ctx: Context) -> "Database":
        """
        View bound to `ctx`, sharing this manager's pool and settings.
        """
        return Database(self._handle, self._settings, ctx, self._bound_session)

    def _bind(self, session: AsyncSession) -> "Database":
        return Database(self._handle, self._settings, self._context, session)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Yield an AsyncSession. A transaction-bound view yields its own session
        and leaves it open.
        """
        self._require_engine("session")
        if self._bound_session is not None:
            yield self._bound_session
            return
        async with self._handle.sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def scope(
        self,
        operation: str,
        ctx: Optional[Context] = None,
        commit: bool = False,
    ) -> AsyncIterator[AsyncSession]:
        """
        Session for a single repository round trip.

        Applies the context deadline and error classification. With `commit`
        the session is committed on success, or only flushed when it belongs
        to an enclosing transaction.
        """
        self._require_engine(operation)
        async with (ctx or self._context).scope(operation):
            with translate_errors(operation):
                async with self.session() as session:
                    yield session
                    if commit:
                        if self._bound_session is None:
                            await session.commit()
                        else:
                            await session.flush()

    async def transaction(
        self,
        fn: Callable[["Database"], Awaitable[T]],
        ctx: Optional[Context] = None,
    ) -> T:
        """
        Run `fn` inside a transaction and return its result.

        `fn` receives a view bound to the transaction. The transaction commits
        when `fn` returns and rolls back when it raises; the exception is
        re-raised unchanged. Called on a transaction-bound view, `fn` joins the
        enclosing transaction.

        Only begin, commit and rollback failures are classified. A failed
        rollback is raised in place of the error from `fn`, which stays
        reachable as the rollback error's ``__context__``.
        """
        self._require_engine("transaction")
        context = ctx or self._context
        if self._bound_session is not None:
            return await fn(self)

        async with context.scope("transaction"):
            async with self._handle.sessionmaker() as session:
                with translate_errors("transaction"):
                    await session.begin()
                try:
                    result = await fn(self._bind(session).with_context(context))
                except BaseException:
                    await _rollback(session)
                    raise
                with translate_errors("transaction"):
                    await session.commit()
                return result

    # Schema ----------------------------------------------------------------

    async def auto_migrate(self, *models: Any, ctx: Optional[Context] = None) -> None:
        """
        Create the tables backing `models` when they do not exist yet.

        Schema synchronisation is delegated to `MetaData.create_all`.
        """
        grouped: Dict[MetaData, List[Table]] = {}
        for model in models:
            try:
                mapper = sa_inspect(model)
            except NoInspectionAvailable as error:
                raise InvalidConfigurationError(
                    f"{model!r} is not a mapped class", "auto_migrate"
                ) from error
            if not isinstance(mapper, Mapper):
                raise InvalidConfigurationError(
                    f"{model!r} is not a mapped class", "auto_migrate"
                )
            for table in mapper.tables:
                grouped.setdefault(table.metadata, []).append(table)

        engine = self._require_engine("auto_migrate")
        async with (ctx or self._context).scope("auto_migrate"):
            with translate_errors("auto_migrate"):
                async with engine.begin() as conn:
                    for metadata, tables in grouped.items():
                        await conn.run_sync(metadata.create_all, tables=tables)
        log.info(
            "Schema synchronised",
            extra={"tables": [t.name for tables in grouped.values() for t in tables]},
        )


__all__ = ["DRIVER_DIALECTS", "Database", "TimestampingSession", "build_url"]
