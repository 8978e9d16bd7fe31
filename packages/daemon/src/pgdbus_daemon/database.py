"""Request-scoped PostgreSQL access (asyncpg).

Provides:
- Reachability probe returning libpq-style ping codes
- Connection context manager that always closes the connection
- First-row fetch in server text format
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import IntEnum
from typing import AsyncIterator, Optional

import asyncpg
from pgdbus_common import DatabaseError, get_logger

from pgdbus_daemon.context import ConnectionParams
from pgdbus_daemon.signatures import TEXT_CODEC_TYPES

logger = get_logger(__name__)


class PingStatus(IntEnum):
    """Reachability of the database endpoint (values match libpq PGPing)."""

    OK = 0
    REJECT = 1
    NO_RESPONSE = 2
    NO_ATTEMPT = 3
    UNKNOWN = 4


@dataclass(frozen=True)
class ResultColumn:
    name: str
    type_oid: int


@dataclass(frozen=True)
class ResultRow:
    """First row of a result set with its column descriptions.

    ``values`` hold the server's text output, None for SQL NULL.
    """

    columns: tuple[ResultColumn, ...]
    values: tuple[Optional[str], ...]


async def ping(params: ConnectionParams) -> PingStatus:
    """Probe the database endpoint without running a query.

    A server that answers with an error (bad credentials, unknown database)
    is up and counts as OK; only "cannot connect now" is a rejection.

    Args:
        params: Connection parameters

    Returns:
        PingStatus for the endpoint
    """
    try:
        conn = await asyncpg.connect(**params.connect_kwargs())
    except asyncpg.exceptions.CannotConnectNowError:
        return PingStatus.REJECT
    except asyncpg.PostgresError:
        return PingStatus.OK
    except (ValueError, TypeError) as e:
        # includes asyncpg ClientConfigurationError
        logger.debug("ping_no_attempt", error=str(e))
        return PingStatus.NO_ATTEMPT
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("ping_no_response", error=str(e))
        return PingStatus.NO_RESPONSE
    except Exception as e:
        logger.warning("ping_unknown_failure", error=str(e))
        return PingStatus.UNKNOWN

    try:
        await conn.close()
    except Exception as e:
        # endpoint already reached
        logger.debug("ping_close_failed", error=str(e))
    return PingStatus.OK


async def _use_text_codecs(conn: asyncpg.Connection) -> None:
    """Decode bool, integer and float columns as the server's text output."""
    for typename in TEXT_CODEC_TYPES:
        await conn.set_type_codec(
            typename,
            schema="pg_catalog",
            encoder=str,
            decoder=str,
            format="text",
        )


@asynccontextmanager
async def open_connection(params: ConnectionParams) -> AsyncIterator[asyncpg.Connection]:
    """Open a connection for one request and close it on every exit path.

    Args:
        params: Connection parameters

    Yields:
        asyncpg connection decoding scalar types as text

    Raises:
        DatabaseError: If the connection cannot be established
    """
    logger.debug("connecting", host=params.host, port=params.port)
    try:
        conn = await asyncpg.connect(**params.connect_kwargs())
    except Exception as e:
        raise DatabaseError(f"Connection to database failed: {e}") from e

    try:
        try:
            await _use_text_codecs(conn)
        except Exception as e:
            raise DatabaseError(f"Connection setup failed: {e}") from e
        yield conn
    finally:
        await conn.close()


async def fetch_first_row(conn: asyncpg.Connection, sql: str) -> Optional[ResultRow]:
    """Execute ``sql`` and return its first row.

    The statement runs with a one-row limit; further rows are never
    transferred. Statements with no result columns still execute.

    Args:
        conn: Open connection from ``open_connection``
        sql: Query text, executed verbatim without parameters

    Returns:
        First row, or None if the result set is empty

    Raises:
        DatabaseError: If the statement fails or returns no result set
    """
    try:
        stmt = await conn.prepare(sql)
        record = await stmt.fetchrow()
    except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        raise DatabaseError(f"Query failed: {e}") from e

    attributes = stmt.get_attributes()
    if not attributes:
        raise DatabaseError("Statement did not return a result set")
    if record is None:
        return None

    columns = tuple(ResultColumn(attr.name, attr.type.oid) for attr in attributes)
    values = tuple(None if value is None else str(value) for value in record.values())
    return ResultRow(columns=columns, values=values)
