"""PostgreSQL type OID to D-Bus type signature mapping."""

from enum import Enum


class Signature(str, Enum):
    """D-Bus basic type codes a column value can be marshaled as."""

    BOOLEAN = "b"
    INT16 = "n"
    INT32 = "i"
    INT64 = "x"
    DOUBLE = "d"
    STRING = "s"


# Built-in type OIDs (pg_type.h)
BOOLOID = 16
NAMEOID = 19
INT8OID = 20
INT2OID = 21
INT4OID = 23
TEXTOID = 25
OIDOID = 26
JSONOID = 114
XMLOID = 142
FLOAT4OID = 700
FLOAT8OID = 701
BPCHAROID = 1042
VARCHAROID = 1043

TYPE_SIGNATURES: dict[int, Signature] = {
    BOOLOID: Signature.BOOLEAN,
    INT2OID: Signature.INT16,
    INT4OID: Signature.INT32,
    OIDOID: Signature.INT32,
    INT8OID: Signature.INT64,
    FLOAT4OID: Signature.DOUBLE,
    FLOAT8OID: Signature.DOUBLE,
    TEXTOID: Signature.STRING,
    VARCHAROID: Signature.STRING,
    BPCHAROID: Signature.STRING,
    NAMEOID: Signature.STRING,
    XMLOID: Signature.STRING,
    JSONOID: Signature.STRING,
}

# Types whose asyncpg binary codec is replaced by the server's text output
TEXT_CODEC_TYPES = ("bool", "int2", "int4", "int8", "oid", "float4", "float8")


def signature_for(type_oid: int) -> Signature:
    """Return the wire signature for a column type.

    Unknown types fall back to string; this never fails.

    Args:
        type_oid: PostgreSQL type OID

    Returns:
        Signature the value is marshaled as
    """
    return TYPE_SIGNATURES.get(type_oid, Signature.STRING)
