"""D-Bus service loop for the PostgreSQL bridge.

Usage:
    pgdbus-daemon [--bus session|system] [--host /tmp] [--port 15433]

Exports ``/org/postgresql/instance`` with interface
``org.postgresql.instance`` and requests the well-known name
``org.postgresql.instance``.

Example:
    busctl --user call org.postgresql.instance /org/postgresql/instance \\
        org.postgresql.instance Query s "SELECT 10::int2 AS blah"

Dispatch is strictly sequential: a reader task queues incoming messages
and the loop handles one method call to completion, database round-trip
included, before taking the next. Replies therefore leave in arrival order.
"""

import argparse
import asyncio
import signal
import sys
from enum import Enum
from typing import Any, Optional

from jeepney import HeaderFields, Message, MessageFlag, MessageType, message_bus
from jeepney.io.asyncio import DBusConnection, open_dbus_connection
from prometheus_client import start_http_server as start_prometheus_server
from pydantic import ValidationError
from pgdbus_common import (
    ConfigurationError,
    Settings,
    TransportError,
    configure_logging,
    get_logger,
    get_settings,
)

from pgdbus_daemon.context import ConnectionContext
from pgdbus_daemon.interface import BusObject
from pgdbus_daemon.metrics import PENDING_REQUESTS

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# org.freedesktop.DBus.RequestName flags and replies
NAME_FLAG_DO_NOT_QUEUE = 4
NAME_REPLY_PRIMARY_OWNER = 1
NAME_REPLY_ALREADY_OWNER = 4

_STOP = object()


class LoopState(str, Enum):
    DRAINING = "draining"
    WAITING = "waiting"
    TERMINATING = "terminating"


class ServiceLoop:
    """Sequential dispatcher owning one bus connection.

    States:
        draining: a pending message exists; handle it and look for the next
        waiting: nothing pending; block until a message arrives
        terminating: transport lost or stop requested; the loop exits
    """

    def __init__(self, connection: DBusConnection, bus_object: BusObject):
        self.connection = connection
        self.bus_object = bus_object
        self.state = LoopState.WAITING
        self._pending: asyncio.Queue = asyncio.Queue()

    def enqueue(self, msg: Message) -> None:
        self._pending.put_nowait(msg)
        PENDING_REQUESTS.set(self._pending.qsize())

    def stop(self) -> None:
        """Request shutdown once the message being handled is done."""
        logger.info("shutdown_requested")
        self._pending.put_nowait(_STOP)

    async def _receive_loop(self) -> None:
        try:
            while True:
                self.enqueue(await self.connection.receive())
        except Exception as e:
            # EOFError/OSError: bus closed; ValueError/SizeLimitError: undecodable stream
            error = TransportError(f"Bus connection lost: {e!r}")
            error.__cause__ = e
            self._pending.put_nowait(error)

    async def _next_event(self) -> Any:
        try:
            event = self._pending.get_nowait()
        except asyncio.QueueEmpty:
            self.state = LoopState.WAITING
            event = await self._pending.get()
        self.state = LoopState.DRAINING
        PENDING_REQUESTS.set(self._pending.qsize())
        return event

    async def process(self, msg: Message) -> None:
        """Handle one message and send its reply and signals."""
        if msg.header.message_type != MessageType.method_call:
            logger.debug("message_ignored", message_type=msg.header.message_type.name)
            return

        responses = await self.bus_object.handle(msg)
        if msg.header.flags & MessageFlag.no_reply_expected:
            responses = responses[1:]

        try:
            for response in responses:
                await self.connection.send(response)
        except OSError as e:
            raise TransportError(f"Failed to send reply: {e}") from e

    async def run(self) -> None:
        """Dispatch until stopped.

        Raises:
            TransportError: If the bus connection is lost
        """
        receiver = asyncio.create_task(self._receive_loop())
        try:
            while True:
                event = await self._next_event()
                if event is _STOP:
                    return
                if isinstance(event, TransportError):
                    raise event
                await self.process(event)
        finally:
            self.state = LoopState.TERMINATING
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass


async def request_name(connection: DBusConnection, name: str, service: ServiceLoop) -> None:
    """Acquire the well-known bus name.

    Messages arriving before the reply are queued on ``service``.

    Raises:
        TransportError: If the name is owned by someone else or the bus fails
    """
    serial = next(connection.outgoing_serial)
    await connection.send(message_bus.RequestName(name, NAME_FLAG_DO_NOT_QUEUE), serial=serial)

    while True:
        try:
            msg = await connection.receive()
        except Exception as e:
            raise TransportError(f"Bus connection lost while acquiring {name}: {e!r}") from e
        if msg.header.fields.get(HeaderFields.reply_serial) == serial:
            break
        service.enqueue(msg)

    if msg.header.message_type == MessageType.error:
        detail = msg.body[0] if msg.body else msg.header.fields.get(HeaderFields.error_name)
        raise TransportError(f"Failed to acquire service name {name}: {detail}")

    result = msg.body[0]
    if result not in (NAME_REPLY_PRIMARY_OWNER, NAME_REPLY_ALREADY_OWNER):
        raise TransportError(f"Failed to acquire service name {name}: reply code {result}")
    logger.info("service_name_acquired", name=name)


def start_metrics_server(port: int) -> None:
    try:
        start_prometheus_server(port)
        logger.info("prometheus_metrics_started", port=port)
    except OSError as e:
        # Port already in use: non-fatal
        logger.warning("prometheus_metrics_port_busy", port=port, error=str(e))


async def run_service(settings: Settings) -> int:
    """Connect to the bus and serve until stopped.

    Args:
        settings: Daemon settings

    Returns:
        Process exit status
    """
    context = ConnectionContext.from_settings(settings)
    bus_object = BusObject(context, settings.object_path, settings.interface_name)

    if settings.metrics_port is not None:
        start_metrics_server(settings.metrics_port)

    try:
        connection = await open_dbus_connection(settings.bus.upper())
    except (OSError, KeyError, ValueError) as e:
        # KeyError: no session bus address in the environment
        logger.error("bus_connect_failed", bus=settings.bus, error=str(e))
        return EXIT_FAILURE

    service = ServiceLoop(connection, bus_object)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.stop)

    try:
        await request_name(connection, settings.service_name, service)
        logger.info(
            "daemon_started",
            bus=settings.bus,
            name=settings.service_name,
            path=settings.object_path,
            host=context.host,
            port=context.port,
        )
        await service.run()

    except TransportError as e:
        logger.error("transport_failed", error=str(e))
        return EXIT_FAILURE

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        try:
            await connection.close()
        except OSError as e:
            logger.warning("bus_close_warning", error=str(e))
        logger.info("daemon_stopped")

    return EXIT_SUCCESS


def build_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply command line overrides on top of environment settings.

    Raises:
        ConfigurationError: If the environment or an override is invalid
    """
    overrides = {
        "bus": args.bus,
        "db_host": args.host,
        "db_port": args.port,
        "log_level": args.log_level,
        "metrics_port": args.metrics_port,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    try:
        base = base or get_settings()
        if not overrides:
            return base
        return Settings(**{**base.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def main() -> None:
    """Entry point for pgdbus-daemon command."""
    parser = argparse.ArgumentParser(
        description="PostgreSQL query bridge on the D-Bus message bus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Interface org.postgresql.instance at /org/postgresql/instance:
    Ping() -> q
        Database reachability (0 ok, 1 rejecting, 2 no response, 3 no attempt, 4 unknown).

    Query(s) -> a{sv}
        First row of the query result; empty on failure or no rows.

    Properties: Host (s, rw), Port (q, rw), LastError (s, ro)

Example:
    busctl --user call org.postgresql.instance /org/postgresql/instance \\
        org.postgresql.instance Query s "SELECT 10::int2 AS blah"
        """,
    )
    parser.add_argument("--bus", choices=["session", "system"], help="Message bus to join")
    parser.add_argument("--host", help="Database host or socket directory")
    parser.add_argument("--port", type=int, help="Database port")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")

    args = parser.parse_args()

    try:
        settings = build_settings(args)
    except ConfigurationError as e:
        parser.error(str(e))

    configure_logging(settings.log_level, settings.log_format)

    try:
        status = asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        status = EXIT_SUCCESS
    sys.exit(status)


if __name__ == "__main__":
    main()
