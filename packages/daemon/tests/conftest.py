"""Pytest fixtures for daemon tests."""

import asyncio
from contextlib import asynccontextmanager
from itertools import count
from unittest.mock import AsyncMock, patch

import pytest
from jeepney import DBusAddress, HeaderFields, new_method_call

from pgdbus_daemon.context import ConnectionContext
from pgdbus_daemon.interface import BusObject

OBJECT_PATH = "/org/postgresql/instance"
INTERFACE = "org.postgresql.instance"
SERVICE_NAME = "org.postgresql.instance"


def _make_call(
    method,
    signature=None,
    body=(),
    *,
    serial=1,
    path=OBJECT_PATH,
    interface=INTERFACE,
):
    """Build an incoming method call as the bus would deliver it."""
    address = DBusAddress(path, bus_name=SERVICE_NAME, interface=interface)
    msg = new_method_call(address, method, signature, body)
    msg.header.serial = serial
    msg.header.fields[HeaderFields.sender] = ":1.42"
    return msg


class _FakeConnection:
    """In-memory stand-in for jeepney's asyncio DBusConnection.

    ``receive`` hands out queued messages; once they run out it either raises
    EOFError (bus gone) or blocks forever.
    """

    def __init__(self, incoming=(), eof_when_empty=True):
        self.incoming = list(incoming)
        self.eof_when_empty = eof_when_empty
        self.sent = []
        self.sent_serials = []
        self.outgoing_serial = count(start=1)
        self.closed = False

    async def receive(self):
        if self.incoming:
            return self.incoming.pop(0)
        if self.eof_when_empty:
            raise EOFError
        await asyncio.Event().wait()

    async def send(self, message, *, serial=None):
        if serial is None:
            serial = next(self.outgoing_serial)
        self.sent.append(message)
        self.sent_serials.append(serial)

    async def close(self):
        self.closed = True


@pytest.fixture
def context():
    """Connection context with the daemon's defaults."""
    return ConnectionContext()


@pytest.fixture
def bus_object(context):
    """Bus object with a fixed machine id."""
    return BusObject(context, OBJECT_PATH, INTERFACE, machine_id=lambda: "0123456789abcdef")


@pytest.fixture
def make_call():
    """Factory for incoming method call messages."""
    return _make_call


@pytest.fixture
def fake_connection():
    """Factory for in-memory bus connections."""
    return _FakeConnection


@pytest.fixture
def fake_database():
    """Replace connection handling; yields the fetch mock and the opened params."""
    opened = []

    @asynccontextmanager
    async def fake_open(params):
        opened.append(params)
        yield object()

    fetch = AsyncMock()
    with patch("pgdbus_daemon.database.open_connection", fake_open), patch(
        "pgdbus_daemon.database.fetch_first_row", fetch
    ):
        yield fetch, opened
