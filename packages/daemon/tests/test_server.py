"""Tests for the service loop, name acquisition and startup."""

import argparse
import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from jeepney import (
    DBusAddress,
    HeaderFields,
    MessageFlag,
    message_bus,
    new_error,
    new_method_return,
    new_signal,
)
from pgdbus_common import ConfigurationError, Settings, TransportError
from pgdbus_daemon.database import PingStatus
from pgdbus_daemon.interface import PROPERTIES_INTERFACE
from pgdbus_daemon.server import (
    EXIT_FAILURE,
    LoopState,
    ServiceLoop,
    build_settings,
    main,
    request_name,
    run_service,
)

pytestmark = pytest.mark.unit

SERVICE_NAME = "org.postgresql.instance"
INTERFACE = "org.postgresql.instance"


def _reply_serials(connection):
    return [m.header.fields.get(HeaderFields.reply_serial) for m in connection.sent]


def _name_reply(code=1, serial=1):
    """Bus daemon reply to the first RequestName call."""
    request = message_bus.RequestName(SERVICE_NAME, 4)
    request.header.serial = serial
    return new_method_return(request, "u", (code,))


@pytest.fixture
def patched_ping():
    with patch(
        "pgdbus_daemon.database.ping",
        new_callable=AsyncMock,
        return_value=PingStatus.OK,
    ) as mock_ping:
        yield mock_ping


class TestServiceLoop:
    """Sequential dispatch."""

    async def test_replies_in_arrival_order(self, bus_object, make_call, fake_connection, patched_ping):
        calls = [make_call("Ping", serial=serial) for serial in (11, 12, 13)]
        connection = fake_connection(calls)
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="connection lost"):
            await service.run()

        assert _reply_serials(connection) == [11, 12, 13]
        assert service.state is LoopState.TERMINATING

    async def test_handlers_never_interleave(self, bus_object, make_call, fake_connection):
        events = []

        async def slow_ping(params):
            events.append("start")
            for _ in range(3):
                await asyncio.sleep(0)
            events.append("end")
            return PingStatus.OK

        connection = fake_connection([make_call("Ping", serial=s) for s in (1, 2, 3)])
        service = ServiceLoop(connection, bus_object)

        with patch("pgdbus_daemon.database.ping", side_effect=slow_ping):
            with pytest.raises(TransportError):
                await service.run()

        assert events == ["start", "end"] * 3

    async def test_undecodable_stream_is_transport_error(
        self, bus_object, make_call, fake_connection, patched_ping
    ):
        class GarbledConnection(fake_connection):
            async def receive(self):
                if self.incoming:
                    return self.incoming.pop(0)
                raise ValueError("Invalid message")

        connection = GarbledConnection([make_call("Ping", serial=3)])
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="Invalid message") as exc_info:
            await asyncio.wait_for(service.run(), timeout=5)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert _reply_serials(connection) == [3]
        assert service.state is LoopState.TERMINATING

    async def test_stop_after_pending_message(
        self, bus_object, make_call, fake_connection, patched_ping
    ):
        connection = fake_connection(eof_when_empty=False)
        service = ServiceLoop(connection, bus_object)
        service.enqueue(make_call("Ping", serial=5))
        service.stop()

        await service.run()

        assert _reply_serials(connection) == [5]
        assert service.state is LoopState.TERMINATING

    async def test_property_write_applies_before_next_call(
        self, bus_object, make_call, fake_connection, fake_database
    ):
        _, opened = fake_database
        connection = fake_connection(
            [
                make_call(
                    "Set",
                    "ssv",
                    (INTERFACE, "Port", ("q", 5432)),
                    serial=1,
                    interface=PROPERTIES_INTERFACE,
                ),
                make_call("Query", "s", ("SELECT 1",), serial=2),
            ]
        )
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError):
            await service.run()

        assert opened[0].port == 5432
        # reply, PropertiesChanged, reply
        assert len(connection.sent) == 3

    async def test_no_reply_expected(self, bus_object, make_call, fake_connection):
        msg = make_call(
            "Set", "ssv", (INTERFACE, "Port", ("q", 5432)), interface=PROPERTIES_INTERFACE
        )
        msg.header.flags = MessageFlag.no_reply_expected
        connection = fake_connection()
        service = ServiceLoop(connection, bus_object)

        await service.process(msg)

        assert len(connection.sent) == 1
        assert connection.sent[0].header.fields[HeaderFields.member] == "PropertiesChanged"

    async def test_non_call_messages_ignored(self, bus_object, fake_connection):
        signal_msg = new_signal(
            DBusAddress("/org/freedesktop/DBus", interface="org.freedesktop.DBus"),
            "NameAcquired",
            "s",
            (SERVICE_NAME,),
        )
        connection = fake_connection()
        service = ServiceLoop(connection, bus_object)

        await service.process(signal_msg)

        assert connection.sent == []

    async def test_send_failure_is_transport_error(
        self, bus_object, make_call, fake_connection, patched_ping
    ):
        class BrokenConnection(fake_connection):
            async def send(self, message, *, serial=None):
                raise BrokenPipeError("bus went away")

        service = ServiceLoop(BrokenConnection(), bus_object)

        with pytest.raises(TransportError, match="Failed to send reply"):
            await service.process(make_call("Ping"))


class TestRequestName:
    """Well-known name acquisition."""

    async def test_primary_owner(self, bus_object, fake_connection):
        connection = fake_connection([_name_reply(1)])
        service = ServiceLoop(connection, bus_object)

        await request_name(connection, SERVICE_NAME, service)

        request = connection.sent[0]
        assert request.header.fields[HeaderFields.member] == "RequestName"
        assert request.body == (SERVICE_NAME, 4)
        assert connection.sent_serials == [1]

    async def test_early_messages_are_queued(self, bus_object, make_call, fake_connection):
        early = make_call("Ping", serial=99)
        connection = fake_connection([early, _name_reply(1)])
        service = ServiceLoop(connection, bus_object)

        await request_name(connection, SERVICE_NAME, service)

        assert service._pending.get_nowait() is early

    async def test_name_taken(self, bus_object, fake_connection):
        connection = fake_connection([_name_reply(3)])
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="reply code 3"):
            await request_name(connection, SERVICE_NAME, service)

    async def test_error_reply(self, bus_object, fake_connection):
        request = message_bus.RequestName(SERVICE_NAME, 4)
        request.header.serial = 1
        denied = new_error(
            request,
            "org.freedesktop.DBus.Error.AccessDenied",
            "s",
            ("Connection is not allowed to own the service",),
        )
        connection = fake_connection([denied])
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="not allowed to own"):
            await request_name(connection, SERVICE_NAME, service)

    async def test_undecodable_reply(self, bus_object, fake_connection):
        class GarbledConnection(fake_connection):
            async def receive(self):
                raise ValueError("Invalid message")

        connection = GarbledConnection()
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="Invalid message"):
            await request_name(connection, SERVICE_NAME, service)

    async def test_bus_lost(self, bus_object, fake_connection):
        connection = fake_connection()
        service = ServiceLoop(connection, bus_object)

        with pytest.raises(TransportError, match="connection lost"):
            await request_name(connection, SERVICE_NAME, service)


class TestRunService:
    """Startup and exit status."""

    async def test_bus_unavailable(self):
        with patch(
            "pgdbus_daemon.server.open_dbus_connection",
            new_callable=AsyncMock,
            side_effect=FileNotFoundError(2, "No such file or directory"),
        ):
            assert await run_service(Settings()) == EXIT_FAILURE

    async def test_transport_loss_exits_with_failure(self, fake_connection):
        connection = fake_connection([_name_reply(1)])

        with patch(
            "pgdbus_daemon.server.open_dbus_connection",
            new_callable=AsyncMock,
            return_value=connection,
        ) as mock_open:
            status = await run_service(Settings(bus="system"))

        mock_open.assert_awaited_once_with("SYSTEM")
        assert status == EXIT_FAILURE
        assert connection.closed

    async def test_name_not_acquired(self, fake_connection):
        connection = fake_connection([_name_reply(3)])

        with patch(
            "pgdbus_daemon.server.open_dbus_connection",
            new_callable=AsyncMock,
            return_value=connection,
        ):
            assert await run_service(Settings()) == EXIT_FAILURE

        assert connection.closed


class TestBuildSettings:
    """Command line overrides."""

    @staticmethod
    def _args(**overrides):
        values = {"bus": None, "host": None, "port": None, "log_level": None, "metrics_port": None}
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_no_overrides_returns_base(self):
        base = Settings()

        assert build_settings(self._args(), base) is base

    def test_overrides_applied(self):
        settings = build_settings(
            self._args(host="db.internal", port=5432, bus="system", log_level="debug"),
            Settings(),
        )

        assert settings.db_host == "db.internal"
        assert settings.db_port == 5432
        assert settings.bus == "system"
        assert settings.log_level == "DEBUG"

    def test_invalid_port_rejected(self):
        with pytest.raises(ConfigurationError, match="db_port"):
            build_settings(self._args(port=70000), Settings())


class TestMain:
    """Command line entry point."""

    def test_exit_status_from_service(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["pgdbus-daemon", "--bus", "system", "--port", "5432"])
        run = AsyncMock(return_value=EXIT_FAILURE)

        with patch("pgdbus_daemon.server.run_service", run), patch(
            "pgdbus_daemon.server.configure_logging"
        ) as mock_configure:
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == EXIT_FAILURE
        settings = run.await_args.args[0]
        assert settings.bus == "system"
        assert settings.db_port == 5432
        mock_configure.assert_called_once_with(settings.log_level, settings.log_format)

    def test_invalid_override_is_usage_error(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["pgdbus-daemon", "--port", "0"])

        with patch("pgdbus_daemon.server.run_service") as run:
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 2
        run.assert_not_called()
