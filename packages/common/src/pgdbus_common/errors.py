"""Custom error types for pgdbus.

Database failures are contained by the Query handler and recorded as the
LastError property; encoding, argument and transport errors propagate to the
bus object or the service loop.
"""

# Well-known D-Bus error names used in replies
DBUS_ERROR_FAILED = "org.freedesktop.DBus.Error.Failed"
DBUS_ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
DBUS_ERROR_NOT_SUPPORTED = "org.freedesktop.DBus.Error.NotSupported"
DBUS_ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
DBUS_ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
DBUS_ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
DBUS_ERROR_UNKNOWN_PROPERTY = "org.freedesktop.DBus.Error.UnknownProperty"
DBUS_ERROR_PROPERTY_READ_ONLY = "org.freedesktop.DBus.Error.PropertyReadOnly"


class PgDbusError(Exception):
    """Base exception for all pgdbus errors."""

    pass


class ConfigurationError(PgDbusError):
    """Invalid daemon configuration."""

    pass


class TransportError(PgDbusError):
    """Unrecoverable message bus failure (connection lost, name not acquired)."""

    pass


class DatabaseError(PgDbusError):
    """Error connecting to or querying the database."""

    pass


class EncodingError(PgDbusError):
    """Error converting a database value into its wire representation."""

    pass


class UnsupportedTypeError(EncodingError):
    """Column type has no wire encoder.

    Attributes:
        type_oid: PostgreSQL type OID that could not be encoded
    """

    def __init__(self, type_oid: int):
        self.type_oid = type_oid
        super().__init__(f"Unsupported column type OID: {type_oid}")


class ValueParseError(EncodingError):
    """Textual value rejected by the strict parsing policy."""

    pass


class RpcError(PgDbusError):
    """Error reported to the bus caller as a D-Bus error reply.

    Attributes:
        name: D-Bus error name (e.g. org.freedesktop.DBus.Error.InvalidArgs)
        message: Human readable description sent as the error body
    """

    def __init__(self, name: str, message: str):
        self.name = name
        self.message = message
        super().__init__(f"{name}: {message}")


class InvalidArgsError(RpcError):
    """Method called with missing or malformed arguments."""

    def __init__(self, message: str):
        super().__init__(DBUS_ERROR_INVALID_ARGS, message)
