"""Configuration management for pgdbus.

Settings are read from environment variables (prefix ``PGDBUS_``) and an
optional ``.env`` file. Use ``get_settings()`` for the cached instance.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("console", "json")


class Settings(BaseSettings):
    """Daemon settings.

    Environment variables are case insensitive and prefixed with ``PGDBUS_``,
    e.g. ``PGDBUS_DB_PORT=5432``.
    """

    model_config = SettingsConfigDict(
        env_prefix="PGDBUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Message bus
    bus: Literal["session", "system"] = Field(
        default="session",
        description="Which message bus to connect to",
    )
    service_name: str = Field(
        default="org.postgresql.instance",
        description="Well-known bus name requested at startup",
    )
    object_path: str = Field(
        default="/org/postgresql/instance",
        description="Object path the instance interface is exported on",
    )
    interface_name: str = Field(
        default="org.postgresql.instance",
        description="Interface name for Ping/Query and the Host/Port properties",
    )

    # Database endpoint (initial Connection Context)
    db_host: str = Field(
        default="/tmp",
        description="Database host name, address or Unix socket directory",
    )
    db_port: int = Field(
        default=15433,
        ge=1,
        le=65535,
        description="Database port",
    )
    db_user: Optional[str] = Field(
        default=None,
        description="Database user (libpq defaults when unset)",
    )
    db_name: Optional[str] = Field(
        default=None,
        description="Database name (libpq defaults when unset)",
    )
    db_password: Optional[str] = Field(
        default=None,
        description="Database password",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Connection and ping timeout in seconds",
    )
    command_timeout: Optional[float] = Field(
        default=None,
        description="Per-statement timeout in seconds (none by default)",
    )

    # Marshaling
    numeric_parsing: Literal["lenient", "strict"] = Field(
        default="lenient",
        description="How textual numbers are parsed: lenient defaults to zero, strict raises",
    )
    max_host_length: int = Field(
        default=255,
        ge=1,
        description="Maximum length accepted for the Host property",
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="console",
        description="Log output format (console or json)",
    )
    metrics_port: Optional[int] = Field(
        default=None,
        description="Port for the Prometheus metrics exporter (disabled when unset)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got {v!r}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in VALID_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {VALID_LOG_FORMATS}, got {v!r}")
        return fmt


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings loaded from the environment on first call
    """
    return Settings()
