"""Method handlers for the org.postgresql.instance interface.

Implements:
- Ping: database reachability probe, always a successful reply
- Query: run one statement and return its first row as a{sv}

Database failures never become RPC errors: they are logged, recorded in the
context's ``last_error`` and answered with an empty dictionary. Callers
therefore cannot tell "no rows" from "database unreachable" by the reply
alone; the LastError property carries that distinction.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pgdbus_common import (
    DatabaseError,
    EncodingError,
    InvalidArgsError,
    RpcError,
    get_logger,
)
from pgdbus_common.errors import DBUS_ERROR_UNKNOWN_METHOD

from pgdbus_daemon import database
from pgdbus_daemon.context import ConnectionContext
from pgdbus_daemon.encoder import append_value
from pgdbus_daemon.metrics import PING_STATUS
from pgdbus_daemon.signatures import signature_for

logger = get_logger(__name__)


@dataclass(frozen=True)
class MethodCall:
    """Arguments of an incoming method call."""

    member: str
    signature: str = ""
    body: tuple = ()


@dataclass(frozen=True)
class MethodResult:
    """Body of a successful method return."""

    signature: str = ""
    body: tuple = ()


EMPTY_ROW = MethodResult("a{sv}", ([],))


async def handle_ping(context: ConnectionContext, call: MethodCall) -> MethodResult:
    """Handle Ping.

    Returns:
        Reachability status as uint16
    """
    if call.body:
        raise InvalidArgsError("Ping takes no arguments")
    params = context.snapshot()
    status = await database.ping(params)
    PING_STATUS.labels(status=status.name.lower()).inc()
    logger.info("ping", host=params.host, port=params.port, status=status.name.lower())
    return MethodResult("q", (int(status),))


async def handle_query(context: ConnectionContext, call: MethodCall) -> MethodResult:
    """Handle Query.

    Args:
        context: Shared connection context
        call: Method call carrying one string argument, the SQL text

    Returns:
        The first result row as an ordered a{sv} dictionary, or an empty one
        when the database is unreachable, the statement fails, or no rows
        are returned

    Raises:
        InvalidArgsError: If the call does not carry exactly one string
        UnsupportedTypeError: If a result column has no encoder
    """
    if call.signature != "s" or len(call.body) != 1:
        raise InvalidArgsError("Expected one string argument: the query text")
    sql = call.body[0]

    params = context.snapshot()
    row = None
    try:
        async with database.open_connection(params) as conn:
            logger.info("query_request", host=params.host, port=params.port, query=sql[:80])
            row = await database.fetch_first_row(conn, sql)
    except DatabaseError as e:
        logger.warning("query_failed", host=params.host, port=params.port, error=str(e))
        context.record_failure(str(e))
        return EMPTY_ROW

    if row is None:
        context.record_success()
        logger.info("query_no_rows")
        return EMPTY_ROW

    entries: list[tuple[str, tuple[str, Any]]] = []
    try:
        for column, value in zip(row.columns, row.values):
            append_value(
                entries,
                column.name,
                signature_for(column.type_oid),
                column.type_oid,
                value,
                context.parse_policy,
            )
    except EncodingError as e:
        context.record_failure(str(e))
        raise

    context.record_success()
    logger.info("query_succeeded", fields=len(entries))
    return MethodResult("a{sv}", (entries,))


Handler = Callable[[ConnectionContext, MethodCall], Awaitable[MethodResult]]

# Method registry
METHODS: dict[str, Handler] = {
    "Ping": handle_ping,
    "Query": handle_query,
}


async def dispatch(context: ConnectionContext, call: MethodCall) -> MethodResult:
    """Dispatch a method call on the instance interface.

    Raises:
        RpcError: If the method is not known
    """
    handler = METHODS.get(call.member)
    if handler is None:
        raise RpcError(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {call.member}")
    return await handler(context, call)
