from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from conftest import User
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from sqlrepo import (
    Context,
    Database,
    DatabaseConnectionError,
    DatabaseSettings,
    DegradedStateError,
    InvalidConfigurationError,
    NotConnectedError,
    OperationTimeoutError,
    Repository,
    StorageError,
)
from sqlrepo.infrastructure import database as database_module
from sqlrepo.infrastructure.database import build_url

STAT_KEYS = {
    "max_open_connections",
    "open_connections",
    "in_use",
    "idle",
    "wait_count",
    "wait_duration",
    "max_idle_closed",
    "max_lifetime_closed",
}


async def _slow_probe(engine) -> None:
    del engine
    await asyncio.sleep(10)


def test_build_url_maps_driver_to_async_dialect() -> None:
    settings = DatabaseSettings(driver="postgres", dsn="postgresql://app:secret@db:5432/app")

    url = build_url(settings)

    assert url.drivername == "postgresql+asyncpg"
    assert url.host == "db"
    assert url.database == "app"


def test_build_url_keeps_explicit_driver_and_honours_dialect_override() -> None:
    settings = DatabaseSettings(driver="postgres", dsn="postgresql+psycopg://app@db/app")

    assert build_url(settings).drivername == "postgresql+psycopg"
    assert build_url(settings, dialect="postgresql+asyncpg").drivername == "postgresql+asyncpg"


def test_build_url_sqlite_path() -> None:
    url = build_url(DatabaseSettings(driver="sqlite", dsn="/tmp/app.db"))

    assert url.drivername == "sqlite+aiosqlite"
    assert url.database == "/tmp/app.db"


def test_build_url_rejects_non_url_dsn_for_server_drivers() -> None:
    with pytest.raises(InvalidConfigurationError):
        build_url(DatabaseSettings(driver="postgres", dsn="host=db dbname=app"))


def test_build_url_rejects_unknown_driver() -> None:
    settings = DatabaseSettings.model_construct(driver="oracle", dsn="oracle://db")

    with pytest.raises(InvalidConfigurationError):
        build_url(settings)


@pytest.mark.asyncio
async def test_connect_requires_settings() -> None:
    with pytest.raises(InvalidConfigurationError):
        await Database.connect(None)


@pytest.mark.asyncio
@pytest.mark.filterwarnings("error::pytest.PytestUnhandledThreadExceptionWarning")
async def test_connect_unreachable_database_raises_connection_error(tmp_path: Path) -> None:
    settings = DatabaseSettings(driver="sqlite", dsn=str(tmp_path / "missing" / "app.db"))

    with pytest.raises(DatabaseConnectionError) as excinfo:
        await Database.connect(settings)

    assert excinfo.value.operation == "connect"
    assert "does not exist" in excinfo.value.message


@pytest.mark.asyncio
async def test_connect_applies_pool_limits(sqlite_settings: DatabaseSettings) -> None:
    db = await Database.connect(sqlite_settings)
    try:
        pool = db.engine.sync_engine.pool
        assert pool.size() == 10
        assert db.stats()["max_open_connections"] == 100
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_connect_clamps_idle_to_open(sqlite_path: Path) -> None:
    settings = DatabaseSettings(driver="sqlite", dsn=str(sqlite_path), max_open_conns=4)
    db = await Database.connect(settings)
    try:
        assert db.engine.sync_engine.pool.size() == 4
        assert db.stats()["max_open_connections"] == 4
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_in_memory_sqlite_shares_one_connection() -> None:
    db = await Database.connect(DatabaseSettings(driver="sqlite", dsn=":memory:"))
    try:
        await db.auto_migrate(User)
        users = Repository(User, db)
        await users.create(User(name="Mem", email="mem@example.com", age=1))

        assert await users.count() == 1
        assert db.stats()["max_open_connections"] == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_close_twice_raises_not_connected(db: Database) -> None:
    await db.close()

    assert db.closed
    with pytest.raises(NotConnectedError):
        await db.close()


@pytest.mark.asyncio
async def test_operations_after_close_raise_not_connected(db: Database) -> None:
    users = Repository(User, db)
    await db.close()

    with pytest.raises(NotConnectedError):
        await db.ping()
    with pytest.raises(NotConnectedError):
        db.stats()
    with pytest.raises(NotConnectedError):
        await users.count()


@pytest.mark.asyncio
async def test_async_context_manager_closes(sqlite_settings: DatabaseSettings) -> None:
    async with await Database.connect(sqlite_settings) as db:
        await db.ping()

    assert db.closed


@pytest.mark.asyncio
async def test_ping_and_health_check(db: Database) -> None:
    await db.ping()
    await db.health_check(Context(timeout=5.0))


@pytest.mark.asyncio
async def test_health_check_detects_drained_pool(db: Database, monkeypatch) -> None:
    drained = dict.fromkeys(STAT_KEYS, 0)
    monkeypatch.setattr(db, "stats", lambda: drained)

    with pytest.raises(DegradedStateError):
        await db.health_check()


@pytest.mark.asyncio
async def test_ping_respects_deadline(db: Database, monkeypatch) -> None:
    monkeypatch.setattr(database_module, "_probe", _slow_probe)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await db.ping(Context(timeout=0.05))

    assert excinfo.value.operation == "ping"


@pytest.mark.asyncio
async def test_with_context_deadline_applies_to_ping(db: Database, monkeypatch) -> None:
    monkeypatch.setattr(database_module, "_probe", _slow_probe)
    bounded = db.with_context(Context(timeout=0.05))

    with pytest.raises(OperationTimeoutError):
        await bounded.ping()
    assert bounded.settings is db.settings


@pytest.mark.asyncio
async def test_ping_cancellation_propagates(db: Database, monkeypatch) -> None:
    monkeypatch.setattr(database_module, "_probe", _slow_probe)

    task = asyncio.create_task(db.ping())
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_stats_snapshot(db: Database) -> None:
    stats = db.stats()

    assert set(stats) == STAT_KEYS
    assert stats["open_connections"] >= 1
    assert stats["in_use"] == 0
    assert stats["idle"] == stats["open_connections"]

    async with db.session() as session:
        await session.execute(text("SELECT 1"))
        assert db.stats()["in_use"] == 1

    assert db.stats()["in_use"] == 0


@pytest.mark.asyncio
async def test_stats_counts_waits_on_saturated_pool(sqlite_path: Path) -> None:
    settings = DatabaseSettings(
        driver="sqlite", dsn=str(sqlite_path), max_open_conns=1, max_idle_conns=1
    )
    db = await Database.connect(settings)
    try:
        async with db.session() as session:
            await session.execute(text("SELECT 1"))
            waiter = asyncio.create_task(db.ping())
            await asyncio.sleep(0.05)
            assert not waiter.done()
        await waiter

        stats = db.stats()
        assert stats["wait_count"] == 1
        assert stats["wait_duration"] > 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_connections_past_max_lifetime_are_retired(sqlite_path: Path) -> None:
    settings = DatabaseSettings(
        driver="sqlite", dsn=str(sqlite_path), conn_max_lifetime=timedelta(milliseconds=50)
    )
    db = await Database.connect(settings)
    try:
        await asyncio.sleep(0.1)
        await db.ping()

        stats = db.stats()
        assert stats["max_lifetime_closed"] >= 1
        assert stats["open_connections"] == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_connections_past_max_idle_time_are_retired(sqlite_path: Path) -> None:
    settings = DatabaseSettings(
        driver="sqlite", dsn=str(sqlite_path), conn_max_idle_time=timedelta(milliseconds=50)
    )
    db = await Database.connect(settings)
    try:
        await asyncio.sleep(0.1)
        await db.ping()

        stats = db.stats()
        assert stats["max_idle_closed"] >= 1
        assert stats["max_lifetime_closed"] == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_auto_migrate_rejects_unmapped_types(db: Database) -> None:
    with pytest.raises(InvalidConfigurationError):
        await db.auto_migrate(object)


@pytest.mark.asyncio
async def test_auto_migrate_is_idempotent(db: Database) -> None:
    await db.auto_migrate(User)
    await db.auto_migrate(User)

    assert await Repository(User, db).count() == 0


@pytest.mark.asyncio
async def test_transaction_passes_bound_view(db: Database) -> None:
    async def unit(tx: Database) -> bool:
        await Repository(User, tx).create(User(name="Tx", email="tx@example.com", age=9))
        inner = await tx.transaction(lambda nested: Repository(User, nested).count())
        assert inner == 1
        return tx.in_transaction

    assert await db.transaction(unit) is True
    assert db.in_transaction is False
    assert await Repository(User, db).count() == 1


@pytest.mark.asyncio
async def test_transaction_surfaces_failed_rollback(db: Database, monkeypatch) -> None:
    unit_error = RuntimeError("unit of work failed")

    async def broken_rollback(self) -> None:
        raise sa_exc.OperationalError("ROLLBACK", {}, RuntimeError("rollback failed"))

    async def unit(tx: Database) -> None:
        await Repository(User, tx).create(User(name="Rb", email="rb@example.com", age=4))
        raise unit_error

    monkeypatch.setattr(AsyncSession, "rollback", broken_rollback)

    with pytest.raises(StorageError) as excinfo:
        await db.transaction(unit)

    assert excinfo.value.operation == "transaction"
    assert "rollback failed" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, sa_exc.OperationalError)
    assert excinfo.value.__cause__.__context__ is unit_error
