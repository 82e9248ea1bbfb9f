"""
Pytest configuration for sqlrepo.

Provides fixtures for:
- Settings pointing at a throwaway SQLite file per test
- A connected Database with the test schema migrated
- Repositories over the test record types
- PostgreSQL connection details for integration tests
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import psycopg
import pytest
import pytest_asyncio
from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sqlrepo import Database, DatabaseSettings, Repository, TimestampMixin


class ModelBase(DeclarativeBase):
    pass


class User(ModelBase):
    """Test entity with a unique email."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(100), unique=True)
    age: Mapped[int] = mapped_column(default=0)


class Article(TimestampMixin, ModelBase):
    """Test entity carrying created_at / updated_at."""

    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    body: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)


class Document(ModelBase):
    """Test entity whose `modified` column is maintained by the database."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    modified: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
    )


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    return tmp_path / "sqlrepo.db"


@pytest.fixture
def sqlite_settings(sqlite_path: Path) -> DatabaseSettings:
    """
    Settings for a file-backed SQLite database unique to the test.
    """
    return DatabaseSettings(driver="sqlite", dsn=str(sqlite_path))


@pytest_asyncio.fixture
async def db(sqlite_settings: DatabaseSettings) -> AsyncIterator[Database]:
    """
    Connected Database with the test schema created; closed after the test.
    """
    database = await Database.connect(sqlite_settings)
    await database.auto_migrate(User, Article, Document)
    try:
        yield database
    finally:
        if not database.closed:
            await database.close()


@pytest_asyncio.fixture
async def users(db: Database) -> Repository[User]:
    return Repository(User, db)


@pytest_asyncio.fixture
async def articles(db: Database) -> Repository[Article]:
    return Repository(Article, db)


@pytest.fixture(scope="session")
def postgres_dsn() -> str:
    """
    PostgreSQL URL for integration tests.

    Can be overridden via environment variables in CI or local testing.
    """
    return (
        f"postgresql://{os.getenv('DB_USER', 'postgres')}:{os.getenv('DB_PASSWORD', 'postgres')}"
        f"@{os.getenv('DB_HOST', 'localhost')}:{os.getenv('DB_PORT', '5432')}"
        f"/{os.getenv('DB_NAME', 'sqlrepo_test')}"
    )


@pytest.fixture(scope="session")
def postgres_available(postgres_dsn: str) -> bool:
    """
    Check if PostgreSQL is reachable.

    Used to conditionally skip integration tests when the database is not available.
    """
    try:
        with psycopg.connect(postgres_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except Exception:
        return False


@pytest.fixture
def postgres_settings(postgres_dsn: str, postgres_available: bool) -> DatabaseSettings:
    """
    Settings for the integration database. Skips tests if it is not available.
    """
    if not postgres_available:
        pytest.skip("PostgreSQL not available for integration tests")
    return DatabaseSettings(driver="postgres", dsn=postgres_dsn, max_open_conns=5, max_idle_conns=2)
