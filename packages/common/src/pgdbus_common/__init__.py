"""Shared configuration, logging and error types for pgdbus."""

from pgdbus_common.config import Settings, get_settings
from pgdbus_common.errors import (
    ConfigurationError,
    DatabaseError,
    EncodingError,
    InvalidArgsError,
    PgDbusError,
    RpcError,
    TransportError,
    UnsupportedTypeError,
    ValueParseError,
)
from pgdbus_common.logging_config import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "DatabaseError",
    "EncodingError",
    "InvalidArgsError",
    "PgDbusError",
    "RpcError",
    "Settings",
    "TransportError",
    "UnsupportedTypeError",
    "ValueParseError",
    "configure_logging",
    "get_logger",
    "get_settings",
]
