"""Connection Context shared by every request handler.

The context holds the database endpoint (host, port) exposed as writable bus
properties, the static connection options from settings, and the last
database failure message. Handlers take an immutable ``snapshot()`` at the
start of each request so a property write never changes a request midway.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pgdbus_common import Settings

from pgdbus_daemon.encoder import ParsePolicy

DEFAULT_HOST = "/tmp"
DEFAULT_PORT = 15433
DEFAULT_MAX_HOST_LENGTH = 255


@dataclass(frozen=True)
class ConnectionParams:
    """Immutable connection parameters for one request."""

    host: str
    port: int
    user: Optional[str] = None
    database: Optional[str] = None
    password: Optional[str] = None
    connect_timeout: float = 10.0
    command_timeout: Optional[float] = None

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``asyncpg.connect``.

        Unset optional fields are left out so asyncpg applies libpq-style
        defaults (PGUSER, PGDATABASE, current OS user).
        """
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
        }
        if self.user is not None:
            kwargs["user"] = self.user
        if self.database is not None:
            kwargs["database"] = self.database
        if self.password is not None:
            kwargs["password"] = self.password
        return kwargs


class ConnectionContext:
    """Mutable daemon-wide configuration passed to every handler."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        user: Optional[str] = None,
        database: Optional[str] = None,
        password: Optional[str] = None,
        connect_timeout: float = 10.0,
        command_timeout: Optional[float] = None,
        parse_policy: ParsePolicy = ParsePolicy.LENIENT,
        max_host_length: int = DEFAULT_MAX_HOST_LENGTH,
    ):
        self.max_host_length = max_host_length
        self._host = self._validate_host(host)
        self._port = self._validate_port(port)
        self.user = user
        self.database = database
        self.password = password
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.parse_policy = parse_policy
        self.last_error = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionContext":
        return cls(
            settings.db_host,
            settings.db_port,
            user=settings.db_user,
            database=settings.db_name,
            password=settings.db_password,
            connect_timeout=settings.connect_timeout,
            command_timeout=settings.command_timeout,
            parse_policy=ParsePolicy(settings.numeric_parsing),
            max_host_length=settings.max_host_length,
        )

    def _validate_host(self, host: Any) -> str:
        if not isinstance(host, str):
            raise ValueError(f"Host must be a string, got {type(host).__name__}")
        if not host:
            raise ValueError("Host must not be empty")
        if len(host) > self.max_host_length:
            raise ValueError(f"Host longer than {self.max_host_length} characters")
        if "\x00" in host:
            raise ValueError("Host must not contain NUL characters")
        return host

    @staticmethod
    def _validate_port(port: Any) -> int:
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"Port must be an integer, got {type(port).__name__}")
        if not 1 <= port <= 65535:
            raise ValueError(f"Port must be in range 1-65535, got {port}")
        return port

    @property
    def host(self) -> str:
        return self._host

    @host.setter
    def host(self, value: str) -> None:
        self._host = self._validate_host(value)

    @property
    def port(self) -> int:
        return self._port

    @port.setter
    def port(self, value: int) -> None:
        self._port = self._validate_port(value)

    def snapshot(self) -> ConnectionParams:
        """Copy the current parameters for use by a single request."""
        return ConnectionParams(
            host=self._host,
            port=self._port,
            user=self.user,
            database=self.database,
            password=self.password,
            connect_timeout=self.connect_timeout,
            command_timeout=self.command_timeout,
        )

    def record_failure(self, message: str) -> None:
        self.last_error = message

    def record_success(self) -> None:
        self.last_error = ""
