"""The exported bus object: routing of method calls to replies.

One object path carries the instance interface plus the standard
Properties, Introspectable and Peer interfaces. ``BusObject.handle`` turns a
method call into the messages to send back: exactly one reply (method
return or error), followed by a PropertiesChanged signal after a
successful property write.
"""

import time
from pathlib import Path
from typing import Any, Callable, Optional

from jeepney import (
    DBusAddress,
    HeaderFields,
    Message,
    new_error,
    new_method_return,
    new_signal,
)
from pgdbus_common import (
    EncodingError,
    InvalidArgsError,
    RpcError,
    UnsupportedTypeError,
    get_logger,
)
from pgdbus_common.errors import (
    DBUS_ERROR_FAILED,
    DBUS_ERROR_NOT_SUPPORTED,
    DBUS_ERROR_PROPERTY_READ_ONLY,
    DBUS_ERROR_UNKNOWN_INTERFACE,
    DBUS_ERROR_UNKNOWN_METHOD,
    DBUS_ERROR_UNKNOWN_OBJECT,
    DBUS_ERROR_UNKNOWN_PROPERTY,
)

from pgdbus_daemon.context import ConnectionContext
from pgdbus_daemon.handler import MethodCall, MethodResult, dispatch
from pgdbus_daemon.metrics import REQUEST_COUNT, REQUEST_DURATION

logger = get_logger(__name__)

PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
INTROSPECTABLE_INTERFACE = "org.freedesktop.DBus.Introspectable"
PEER_INTERFACE = "org.freedesktop.DBus.Peer"

MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

# Members recorded by name in metrics; anything else is labelled "unknown"
METRIC_MEMBERS = frozenset(
    {"Ping", "Query", "Get", "GetAll", "Set", "Introspect", "GetMachineId"}
)

INTROSPECT_DOCTYPE = (
    '<!DOCTYPE node PUBLIC "-//freedesktop//DTD D-BUS Object Introspection 1.0//EN"\n'
    ' "http://www.freedesktop.org/standards/dbus/1.0/introspect.dtd">\n'
)

STANDARD_INTERFACES_XML = """\
 <interface name="org.freedesktop.DBus.Peer">
  <method name="Ping"/>
  <method name="GetMachineId">
   <arg type="s" name="machine_uuid" direction="out"/>
  </method>
 </interface>
 <interface name="org.freedesktop.DBus.Introspectable">
  <method name="Introspect">
   <arg name="xml_data" type="s" direction="out"/>
  </method>
 </interface>
 <interface name="org.freedesktop.DBus.Properties">
  <method name="Get">
   <arg name="interface_name" direction="in" type="s"/>
   <arg name="property_name" direction="in" type="s"/>
   <arg name="value" direction="out" type="v"/>
  </method>
  <method name="GetAll">
   <arg name="interface_name" direction="in" type="s"/>
   <arg name="props" direction="out" type="a{sv}"/>
  </method>
  <method name="Set">
   <arg name="interface_name" direction="in" type="s"/>
   <arg name="property_name" direction="in" type="s"/>
   <arg name="value" direction="in" type="v"/>
  </method>
  <signal name="PropertiesChanged">
   <arg type="s" name="interface_name"/>
   <arg type="a{sv}" name="changed_properties"/>
   <arg type="as" name="invalidated_properties"/>
  </signal>
 </interface>
"""

INSTANCE_INTERFACE_XML = """\
 <interface name="{name}">
  <method name="Ping">
   <arg type="q" direction="out"/>
  </method>
  <method name="Query">
   <arg type="s" direction="in"/>
   <arg type="a{{sv}}" direction="out"/>
  </method>
  <property name="Port" type="q" access="readwrite"/>
  <property name="Host" type="s" access="readwrite"/>
  <property name="LastError" type="s" access="read">
   <annotation name="org.freedesktop.DBus.Property.EmitsChangedSignal" value="false"/>
  </property>
 </interface>
"""


class _Property:
    """A bus property backed by a ConnectionContext attribute."""

    def __init__(
        self,
        signature: str,
        attribute: str,
        writable: bool = False,
        emits_change: bool = False,
    ):
        self.signature = signature
        self.attribute = attribute
        self.writable = writable
        self.emits_change = emits_change


PROPERTIES: dict[str, _Property] = {
    "Port": _Property("q", "port", writable=True, emits_change=True),
    "Host": _Property("s", "host", writable=True, emits_change=True),
    "LastError": _Property("s", "last_error"),
}


def read_machine_id(paths: tuple[str, ...] = MACHINE_ID_PATHS) -> str:
    """Read the host's machine id.

    Raises:
        RpcError: If no machine id file is readable
    """
    for path in paths:
        try:
            return Path(path).read_text().strip()
        except OSError:
            continue
    raise RpcError(DBUS_ERROR_FAILED, "Machine ID not available")


class BusObject:
    """The object exported at the instance object path."""

    def __init__(
        self,
        context: ConnectionContext,
        object_path: str = "/org/postgresql/instance",
        interface_name: str = "org.postgresql.instance",
        machine_id: Callable[[], str] = read_machine_id,
    ):
        self.context = context
        self.object_path = object_path
        self.interface_name = interface_name
        self._machine_id = machine_id

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def handle(self, msg: Message) -> list[Message]:
        """Produce the messages answering one method call.

        Args:
            msg: Incoming method call

        Returns:
            The reply first, then any signals to emit
        """
        fields = msg.header.fields
        path = fields.get(HeaderFields.path)
        interface = fields.get(HeaderFields.interface)
        member = fields.get(HeaderFields.member, "")
        call = MethodCall(member, fields.get(HeaderFields.signature, ""), tuple(msg.body))

        start_time = time.perf_counter()
        status = "ok"
        signals: list[Message] = []
        try:
            if path == self.object_path:
                result, signals = await self._route(interface, call)
            elif self._is_ancestor(path) and interface in (None, INTROSPECTABLE_INTERFACE):
                result = self._introspect_ancestor(call, path)
            else:
                raise RpcError(DBUS_ERROR_UNKNOWN_OBJECT, f"Unknown object: {path}")
            reply = new_method_return(msg, result.signature or None, result.body)

        except RpcError as e:
            status = "error"
            logger.info("rpc_error", member=member, error_name=e.name, error=e.message)
            reply = new_error(msg, e.name, "s", (e.message,))

        except UnsupportedTypeError as e:
            status = "error"
            logger.error("unsupported_column_type", member=member, type_oid=e.type_oid)
            reply = new_error(msg, DBUS_ERROR_NOT_SUPPORTED, "s", (str(e),))

        except EncodingError as e:
            status = "error"
            logger.error("encoding_failed", member=member, error=str(e))
            reply = new_error(msg, DBUS_ERROR_FAILED, "s", (str(e),))

        except Exception as e:
            status = "error"
            logger.exception("method_error", member=member, error=str(e))
            reply = new_error(msg, DBUS_ERROR_FAILED, "s", (f"Internal error: {e}",))

        duration = time.perf_counter() - start_time
        method = member if member in METRIC_MEMBERS else "unknown"
        REQUEST_COUNT.labels(method=method, status=status).inc()
        REQUEST_DURATION.labels(method=method, status=status).observe(duration)
        return [reply, *signals]

    async def _route(
        self, interface: Optional[str], call: MethodCall
    ) -> tuple[MethodResult, list[Message]]:
        if interface == self.interface_name or (
            interface is None and call.member in ("Ping", "Query")
        ):
            return await dispatch(self.context, call), []
        if interface == PROPERTIES_INTERFACE:
            return self._properties(call)
        if interface == INTROSPECTABLE_INTERFACE or (
            interface is None and call.member == "Introspect"
        ):
            return self._introspect(call), []
        if interface == PEER_INTERFACE or (
            interface is None and call.member == "GetMachineId"
        ):
            return self._peer(call), []
        if interface is None:
            raise RpcError(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {call.member}")
        raise RpcError(DBUS_ERROR_UNKNOWN_INTERFACE, f"Unknown interface: {interface}")

    # ------------------------------------------------------------------
    # org.freedesktop.DBus.Properties
    # ------------------------------------------------------------------

    def _check_interface(self, name: str) -> None:
        if name not in (self.interface_name, ""):
            raise RpcError(DBUS_ERROR_UNKNOWN_INTERFACE, f"Unknown interface: {name}")

    def _lookup_property(self, interface: str, name: str) -> _Property:
        self._check_interface(interface)
        prop = PROPERTIES.get(name)
        if prop is None:
            raise RpcError(DBUS_ERROR_UNKNOWN_PROPERTY, f"Unknown property: {name}")
        return prop

    def _variant(self, prop: _Property) -> tuple[str, Any]:
        return (prop.signature, getattr(self.context, prop.attribute))

    def get_all_properties(self) -> dict[str, tuple[str, Any]]:
        return {name: self._variant(prop) for name, prop in PROPERTIES.items()}

    def _properties(self, call: MethodCall) -> tuple[MethodResult, list[Message]]:
        if call.member == "Get":
            if call.signature != "ss":
                raise InvalidArgsError("Get expects (ss)")
            interface, name = call.body
            prop = self._lookup_property(interface, name)
            return MethodResult("v", (self._variant(prop),)), []

        if call.member == "GetAll":
            if call.signature != "s":
                raise InvalidArgsError("GetAll expects (s)")
            self._check_interface(call.body[0])
            return MethodResult("a{sv}", (self.get_all_properties(),)), []

        if call.member == "Set":
            if call.signature != "ssv":
                raise InvalidArgsError("Set expects (ssv)")
            interface, name, (value_signature, value) = call.body
            prop = self._lookup_property(interface, name)
            if not prop.writable:
                raise RpcError(DBUS_ERROR_PROPERTY_READ_ONLY, f"Property {name} is read-only")
            if value_signature != prop.signature:
                raise InvalidArgsError(
                    f"Property {name} has type {prop.signature!r}, got {value_signature!r}"
                )
            try:
                setattr(self.context, prop.attribute, value)
            except ValueError as e:
                raise InvalidArgsError(str(e)) from e

            logger.info("property_set", name=name, value=value)
            signals = []
            if prop.emits_change:
                signals.append(self.properties_changed({name: self._variant(prop)}))
            return MethodResult(), signals

        raise RpcError(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {call.member}")

    def properties_changed(self, changed: dict[str, tuple[str, Any]]) -> Message:
        emitter = DBusAddress(self.object_path, interface=PROPERTIES_INTERFACE)
        return new_signal(
            emitter,
            "PropertiesChanged",
            "sa{sv}as",
            (self.interface_name, changed, []),
        )

    # ------------------------------------------------------------------
    # org.freedesktop.DBus.Introspectable / org.freedesktop.DBus.Peer
    # ------------------------------------------------------------------

    def introspection_xml(self) -> str:
        return (
            INTROSPECT_DOCTYPE
            + "<node>\n"
            + STANDARD_INTERFACES_XML
            + INSTANCE_INTERFACE_XML.format(name=self.interface_name)
            + "</node>\n"
        )

    def _introspect(self, call: MethodCall) -> MethodResult:
        if call.member != "Introspect":
            raise RpcError(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {call.member}")
        return MethodResult("s", (self.introspection_xml(),))

    def _is_ancestor(self, path: Optional[str]) -> bool:
        if not path:
            return False
        prefix = path if path.endswith("/") else path + "/"
        return self.object_path.startswith(prefix)

    def _introspect_ancestor(self, call: MethodCall, path: str) -> MethodResult:
        """Introspection data for a parent path, listing the next child node."""
        if call.member != "Introspect":
            raise RpcError(DBUS_ERROR_UNKNOWN_OBJECT, f"Unknown object: {path}")
        prefix = path if path.endswith("/") else path + "/"
        child = self.object_path[len(prefix):].split("/", 1)[0]
        xml = (
            INTROSPECT_DOCTYPE
            + "<node>\n"
            + f' <node name="{child}"/>\n'
            + "</node>\n"
        )
        return MethodResult("s", (xml,))

    def _peer(self, call: MethodCall) -> MethodResult:
        if call.member == "Ping":
            return MethodResult()
        if call.member == "GetMachineId":
            return MethodResult("s", (self._machine_id(),))
        raise RpcError(DBUS_ERROR_UNKNOWN_METHOD, f"Unknown method: {call.member}")
