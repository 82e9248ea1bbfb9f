from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from sqlrepo.config import DatabaseSettings, get_settings
from sqlrepo.context import Context
from sqlrepo.errors import DataAccessError
from sqlrepo.infrastructure.database import Database
from sqlrepo.reporter import print_stats
from sqlrepo.utils.logging import configure_logging

T = TypeVar("T")

app = typer.Typer(help="sqlrepo database diagnostics.")

DriverOption = typer.Option(None, "--driver", "-d", help="Override DB_DRIVER (postgres, mysql, sqlite).")
DsnOption = typer.Option(None, "--dsn", help="Override DB_DSN.")
TimeoutOption = typer.Option(5.0, "--timeout", "-t", help="Deadline in seconds for the check.")


def _settings(driver: Optional[str], dsn: Optional[str]) -> DatabaseSettings:
    """
    Effective settings: environment / .env values with CLI overrides applied.
    """
    settings = get_settings()
    overrides = {key: value for key, value in {"driver": driver, "dsn": dsn}.items() if value}
    if not overrides:
        return settings
    return DatabaseSettings(**{**settings.model_dump(), **overrides})


def _run(settings: DatabaseSettings, action: Callable[[Database], Awaitable[T]]) -> T:
    """
    Connect, run `action`, close. DataAccessError exits with status 1.
    """

    async def runner() -> T:
        db = await Database.connect(settings)
        try:
            return await action(db)
        finally:
            await db.close()

    configure_logging(level=settings.log_level)
    try:
        return asyncio.run(runner())
    except DataAccessError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error


@app.command()
def info(driver: Optional[str] = DriverOption, dsn: Optional[str] = DsnOption) -> None:
    """
    Show effective configuration values.
    """
    settings = _settings(driver, dsn)
    typer.echo(
        f"driver={settings.driver} dsn={settings.masked_dsn()} | "
        f"max_open={settings.max_open_conns} max_idle={settings.max_idle_conns} "
        f"lifetime={settings.conn_max_lifetime} idle_time={settings.conn_max_idle_time} "
        f"log_level={settings.log_level}"
    )


@app.command()
def ping(
    driver: Optional[str] = DriverOption,
    dsn: Optional[str] = DsnOption,
    timeout: float = TimeoutOption,
) -> None:
    """
    Check that the database answers.
    """
    _run(_settings(driver, dsn), lambda db: db.ping(Context(timeout=timeout)))
    typer.echo("OK")


@app.command()
def health(
    driver: Optional[str] = DriverOption,
    dsn: Optional[str] = DsnOption,
    timeout: float = TimeoutOption,
) -> None:
    """
    Ping and verify the pool holds open connections.
    """

    async def check(db: Database) -> dict[str, Any]:
        await db.health_check(Context(timeout=timeout))
        return db.stats()

    stats = _run(_settings(driver, dsn), check)
    typer.echo(f"healthy (open_connections={stats['open_connections']})")


@app.command()
def stats(
    driver: Optional[str] = DriverOption,
    dsn: Optional[str] = DsnOption,
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON instead of a table."),
) -> None:
    """
    Print connection pool statistics after a ping.
    """
    settings = _settings(driver, dsn)

    async def collect(db: Database) -> dict[str, Any]:
        await db.ping()
        return db.stats()

    snapshot = _run(settings, collect)
    if as_json:
        typer.echo(json.dumps(snapshot, indent=2))
    else:
        print_stats(snapshot, settings)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
