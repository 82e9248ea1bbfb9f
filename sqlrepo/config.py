"""
Configuration settings for sqlrepo.

Uses Pydantic Settings to load the database connection and pool parameters
from environment variables (or a `.env` file). Zero-valued pool parameters
are replaced with sane defaults, so an empty environment yields a usable
configuration.
"""
from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAX_OPEN_CONNS = 100
DEFAULT_MAX_IDLE_CONNS = 10
DEFAULT_CONN_MAX_LIFETIME = timedelta(hours=1)
DEFAULT_CONN_MAX_IDLE_TIME = timedelta(minutes=10)

Driver = Literal["postgres", "mysql", "sqlite"]
LogLevel = Literal["SILENT", "ERROR", "WARNING", "INFO", "DEBUG"]


class DatabaseSettings(BaseSettings):
    # Connection
    driver: Driver = Field("sqlite", alias="DB_DRIVER")
    dsn: str = Field(":memory:", alias="DB_DSN")

    # Pool sizing (0 means "use the default")
    max_open_conns: int = Field(0, ge=0, alias="DB_MAX_OPEN_CONNS")
    max_idle_conns: int = Field(0, ge=0, alias="DB_MAX_IDLE_CONNS")
    conn_max_lifetime: timedelta = Field(timedelta(0), alias="DB_CONN_MAX_LIFETIME")
    conn_max_idle_time: timedelta = Field(timedelta(0), alias="DB_CONN_MAX_IDLE_TIME")
    pool_timeout: float = Field(30.0, gt=0, alias="DB_POOL_TIMEOUT")

    # Behaviour
    connect_attempts: int = Field(1, ge=1, alias="DB_CONNECT_ATTEMPTS")
    log_level: LogLevel = Field("WARNING", alias="DB_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("max_open_conns")
    @classmethod
    def _default_max_open(cls, value: int) -> int:
        return value or DEFAULT_MAX_OPEN_CONNS

    @field_validator("max_idle_conns")
    @classmethod
    def _default_max_idle(cls, value: int) -> int:
        return value or DEFAULT_MAX_IDLE_CONNS

    @field_validator("conn_max_lifetime", "conn_max_idle_time")
    @classmethod
    def _default_durations(cls, value: timedelta, info: ValidationInfo) -> timedelta:
        if value < timedelta(0):
            raise ValueError(f"{info.field_name} must not be negative")
        if value:
            return value
        if info.field_name == "conn_max_lifetime":
            return DEFAULT_CONN_MAX_LIFETIME
        return DEFAULT_CONN_MAX_IDLE_TIME

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.upper()
            return "WARNING" if value == "WARN" else value
        return value

    def masked_dsn(self) -> str:
        """
        Return the DSN with any password component replaced by '***'.
        """
        scheme, sep, rest = self.dsn.partition("://")
        if not sep or "@" not in rest:
            return self.dsn
        credentials, _, host = rest.rpartition("@")
        user, has_password, _ = credentials.partition(":")
        if not has_password:
            return self.dsn
        return f"{scheme}://{user}:***@{host}"


@lru_cache(maxsize=1)
def get_settings() -> DatabaseSettings:
    """
    Retrieve a cached instance of DatabaseSettings to avoid repeated env parsing.
    """
    return DatabaseSettings()


__all__ = [
    "DEFAULT_CONN_MAX_IDLE_TIME",
    "DEFAULT_CONN_MAX_LIFETIME",
    "DEFAULT_MAX_IDLE_CONNS",
    "DEFAULT_MAX_OPEN_CONNS",
    "DatabaseSettings",
    "get_settings",
]
