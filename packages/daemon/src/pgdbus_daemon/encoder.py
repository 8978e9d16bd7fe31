"""Value encoder: textual PostgreSQL values to D-Bus variant values.

Values arrive in the server's text output format (NULL arrives as None and
is treated as the empty string under either policy). Each value is converted according to its
column type OID and tagged with its wire signature, producing the
``(signature, value)`` pair jeepney serialises as a variant.

Two parsing policies exist:

- LENIENT mirrors C ``strtol``/``strtod``: leading whitespace is skipped,
  trailing garbage ignored, unparsable input becomes zero. Integers saturate
  to the int64 range and are then narrowed to the signature's width.
- STRICT accepts only complete literals within range and raises
  ``ValueParseError`` otherwise.
"""

import math
import re
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from pgdbus_common import EncodingError, UnsupportedTypeError, ValueParseError

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
    TYPE_SIGNATURES,
    VARCHAROID,
    XMLOID,
    Signature,
)


class ParsePolicy(str, Enum):
    """How malformed numeric text is treated."""

    LENIENT = "lenient"
    STRICT = "strict"


INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

# C isspace() set
_LEADING_SPACE = r"[ \t\n\v\f\r]*"

_INT_LITERAL = r"[+-]?[0-9]+"
_FLOAT_LITERAL = (
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)(?:[pP][+-]?[0-9]+)?"
    r"|[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?"
    r"|[+-]?(?:[iI][nN][fF](?:[iI][nN][iI][tT][yY])?|[nN][aA][nN])"
)

_INT_PREFIX = re.compile(_LEADING_SPACE + "(" + _INT_LITERAL + ")")
_FLOAT_PREFIX = re.compile(_LEADING_SPACE + "(" + _FLOAT_LITERAL + ")")
_INT_FULL = re.compile(_INT_LITERAL)
_FLOAT_FULL = re.compile(_FLOAT_LITERAL)


def _narrow(value: int, bits: int) -> int:
    """Two's complement truncation, like a C cast to a narrower int."""
    mask = (1 << bits) - 1
    value &= mask
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _significant_digits(literal: str) -> int:
    return len(literal.lstrip("+-").lstrip("0"))


def _int_value(literal: str) -> int:
    """``int()`` of a base-10 literal with its leading zeros dropped."""
    sign = "-" if literal.startswith("-") else ""
    return int(sign + (literal.lstrip("+-").lstrip("0") or "0"))


def _saturating_int(literal: str) -> int:
    """Parse a base-10 literal clamped to the int64 range, like C ``strtoll``."""
    # 20 or more significant digits always exceed int64
    if _significant_digits(literal) > 19:
        return INT64_MIN if literal.startswith("-") else INT64_MAX
    return max(INT64_MIN, min(INT64_MAX, _int_value(literal)))


def _to_float(literal: str) -> float:
    unsigned = literal.lstrip("+-")
    if unsigned[:2] in ("0x", "0X"):
        try:
            return float.fromhex(literal)
        except OverflowError:
            # strtod returns HUGE_VAL
            return math.copysign(math.inf, -1.0 if literal.startswith("-") else 1.0)
    return float(literal)


def parse_bool(text: str, policy: ParsePolicy = ParsePolicy.LENIENT) -> bool:
    """Parse PostgreSQL boolean text output.

    Only ``"t"`` is true. Under the strict policy anything other than
    ``"t"`` or ``"f"`` is rejected.
    """
    if policy is ParsePolicy.STRICT and text not in ("t", "f"):
        raise ValueParseError(f"Invalid boolean value: {text!r}")
    return text == "t"


def parse_int(text: str, bits: int = 64, policy: ParsePolicy = ParsePolicy.LENIENT) -> int:
    """Parse a base-10 signed integer into a ``bits``-wide value.

    Args:
        text: Textual value
        bits: Target width (16, 32 or 64)
        policy: Parsing policy

    Returns:
        Parsed integer within the signed range of ``bits``

    Raises:
        ValueParseError: Strict policy and the text is not an in-range integer
    """
    if policy is ParsePolicy.STRICT:
        if not _INT_FULL.fullmatch(text):
            raise ValueParseError(f"Invalid integer value: {text!r}")
        if _significant_digits(text) > 19:
            raise ValueParseError(f"Integer out of range for {bits}-bit signature")
        value = _int_value(text)
        low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
        if not low <= value <= high:
            raise ValueParseError(f"Integer {value} out of range for {bits}-bit signature")
        return value

    match = _INT_PREFIX.match(text)
    if match is None:
        return 0
    return _narrow(_saturating_int(match.group(1)), bits)


def parse_double(text: str, policy: ParsePolicy = ParsePolicy.LENIENT) -> float:
    """Parse a floating point literal (decimal, hex, inf or nan).

    Raises:
        ValueParseError: Strict policy and the text is not a complete literal
    """
    if policy is ParsePolicy.STRICT:
        if not _FLOAT_FULL.fullmatch(text):
            raise ValueParseError(f"Invalid floating point value: {text!r}")
        return _to_float(text)

    match = _FLOAT_PREFIX.match(text)
    if match is None:
        return 0.0
    return _to_float(match.group(1))


def _parse_text(text: str, policy: ParsePolicy = ParsePolicy.LENIENT) -> str:
    return text


Converter = Callable[[str, ParsePolicy], Any]

_CONVERTERS: dict[int, Converter] = {
    BOOLOID: parse_bool,
    INT2OID: partial(parse_int, bits=16),
    INT4OID: partial(parse_int, bits=32),
    OIDOID: partial(parse_int, bits=32),
    INT8OID: partial(parse_int, bits=64),
    FLOAT4OID: parse_double,
    FLOAT8OID: parse_double,
    XMLOID: _parse_text,
    JSONOID: _parse_text,
    VARCHAROID: _parse_text,
    BPCHAROID: _parse_text,
    NAMEOID: _parse_text,
    TEXTOID: _parse_text,
}


def encode(
    signature: Signature | str,
    type_oid: int,
    text_value: Optional[str],
    policy: ParsePolicy = ParsePolicy.LENIENT,
) -> tuple[str, Any]:
    """Encode one column value as a D-Bus variant.

    Args:
        signature: Wire signature chosen for the column
        type_oid: PostgreSQL type OID of the column
        text_value: Value in text format, None for SQL NULL
        policy: Numeric parsing policy

    Returns:
        ``(signature, value)`` variant tuple

    Raises:
        UnsupportedTypeError: No encoder exists for ``type_oid``
        EncodingError: ``signature`` does not match the type
        ValueParseError: Strict policy rejected the value
    """
    converter = _CONVERTERS.get(type_oid)
    if converter is None:
        raise UnsupportedTypeError(type_oid)

    sig = Signature(signature)
    if TYPE_SIGNATURES[type_oid] is not sig:
        raise EncodingError(f"Signature {sig.value!r} does not match type OID {type_oid}")

    # NULL reads as empty text under either policy: false, zero or ""
    if text_value is None:
        return sig.value, converter("", policy=ParsePolicy.LENIENT)
    # keyword so partial(parse_int, bits=...) keeps its width
    return sig.value, converter(text_value, policy=policy)


def append_value(
    container: list[tuple[str, tuple[str, Any]]],
    name: str,
    signature: Signature | str,
    type_oid: int,
    text_value: Optional[str],
    policy: ParsePolicy = ParsePolicy.LENIENT,
) -> None:
    """Encode a value and append it as a ``{sv}`` entry to an open container.

    Nothing is appended when encoding fails.
    """
    container.append((name, encode(signature, type_oid, text_value, policy)))
