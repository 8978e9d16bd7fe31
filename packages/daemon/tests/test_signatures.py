"""Tests for the type OID to wire signature table."""

import pytest

from pgdbus_daemon.signatures import (
    BOOLOID,
    BPCHAROID,
    FLOAT4OID,
    FLOAT8OID,
    INT2OID,
    INT4OID,
    INT8OID,
    JSONOID,
    NAMEOID,
    OIDOID,
    TEXTOID,
    VARCHAROID,
    XMLOID,
    Signature,
    signature_for,
)

pytestmark = pytest.mark.unit


class TestSignatureFor:
    """Tests for signature_for."""

    @pytest.mark.parametrize(
        "type_oid,expected",
        [
            (BOOLOID, Signature.BOOLEAN),
            (INT2OID, Signature.INT16),
            (INT4OID, Signature.INT32),
            (OIDOID, Signature.INT32),
            (INT8OID, Signature.INT64),
            (FLOAT4OID, Signature.DOUBLE),
            (FLOAT8OID, Signature.DOUBLE),
            (TEXTOID, Signature.STRING),
            (VARCHAROID, Signature.STRING),
            (BPCHAROID, Signature.STRING),
            (NAMEOID, Signature.STRING),
            (XMLOID, Signature.STRING),
            (JSONOID, Signature.STRING),
        ],
    )
    def test_known_types(self, type_oid, expected):
        """Each built-in type maps to its signature."""
        assert signature_for(type_oid) is expected

    @pytest.mark.parametrize("type_oid", [0, 1082, 1700, 2950, 3802, -1, 2**32])
    def test_unknown_types_fall_back_to_string(self, type_oid):
        """date, numeric, uuid, jsonb and nonsense OIDs map to string."""
        assert signature_for(type_oid) is Signature.STRING

    def test_deterministic(self):
        """Same OID always yields the same signature."""
        assert {signature_for(INT8OID) for _ in range(10)} == {Signature.INT64}

    def test_signature_codes_are_dbus_type_codes(self):
        """Enum values are the single-character D-Bus codes."""
        assert [s.value for s in Signature] == ["b", "n", "i", "x", "d", "s"]
