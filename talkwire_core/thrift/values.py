"""Value model for schema-less Thrift decoding.

Decoded values are plain Python objects with a few tagging subclasses where
the wire needs more information than the builtin type carries:

- ``Struct``: field id -> value (dict subclass)
- ``dict``: MAP
- ``list``: LIST, ``ThriftSet``: SET
- ``str`` / ``bytes``: STRING, classified by ``looks_like_text``
- ``bool``, ``float``
- ``int``: I32 when it fits, ``I64`` to force (and report) 64-bit width

Python ints have arbitrary precision, so a 64-bit value beyond 2**53 is never
squeezed through a float.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from ..errors import EncodeError

Value = Any

I32_MIN = -(2**31)
I32_MAX = 2**31 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1


class TType(IntEnum):
    """Wire type tags, numbered as in the binary protocol."""

    STOP = 0
    VOID = 1
    BOOL = 2
    BYTE = 3
    DOUBLE = 4
    I16 = 6
    I32 = 8
    I64 = 10
    STRING = 11
    STRUCT = 12
    MAP = 13
    SET = 14
    LIST = 15


class MessageKind(IntEnum):
    """Message envelope kinds."""

    CALL = 1
    REPLY = 2
    EXCEPTION = 3
    ONEWAY = 4


class Protocol(Enum):
    """Supported Thrift protocols."""

    COMPACT = "compact"
    BINARY = "binary"


@dataclass(frozen=True)
class MessageHeader:
    """Envelope preceding a message body."""

    name: str
    seqid: int
    kind: MessageKind


class Struct(dict[int, Any]):
    """A decoded struct: field id -> value."""

    def __repr__(self) -> str:
        return f"Struct({dict.__repr__(self)})"


class I64(int):
    """Integer written with 64-bit width regardless of magnitude."""

    def __repr__(self) -> str:
        return f"I64({int.__repr__(self)})"


class ThriftSet(list[Any]):
    """A SET container. Ordered so unhashable members survive decoding."""

    def __repr__(self) -> str:
        return f"ThriftSet({list.__repr__(self)})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, list):
            return NotImplemented
        if len(self) != len(other):
            return False
        remaining = list(other)
        for item in self:
            for idx, candidate in enumerate(remaining):
                if candidate == item:
                    del remaining[idx]
                    break
            else:
                return False
        return True

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        return result if result is NotImplemented else not result

    __hash__ = None  # type: ignore[assignment]


# C0 controls that a canonical JSON serializer writes as \uXXXX.
# \b, \t, \n, \f and \r have short escapes and do not count.
_ESCAPED_CONTROLS = frozenset(range(0x20)) - {0x08, 0x09, 0x0A, 0x0C, 0x0D}


def looks_like_text(raw: bytes) -> bool:
    """Classify a STRING payload as text.

    The wire does not distinguish text from binary, so this is a lossy,
    best-effort rule: the payload is text when it decodes as strict UTF-8
    (so re-encoding gives back identical bytes) and contains no character
    that would need a \\u escape in canonical JSON. The JSON check matches
    the literal two-character sequence backslash-u in the serialized form, so
    text holding a backslash followed by ``u`` (``C:\\users``) is classified
    as binary too. Binary data that happens to satisfy both conditions comes
    back as ``str``.
    """
    try:
        raw.decode("utf-8")
    except UnicodeDecodeError:
        return False
    if b"\\u" in raw:
        return False
    return not any(byte in _ESCAPED_CONTROLS for byte in raw)


def ttype_of(value: Any) -> TType:
    """Return the wire type used to encode ``value``.

    Raises:
        EncodeError: If the value has no wire representation.
    """
    # bool before int, subclasses before their builtin bases
    if isinstance(value, bool):
        return TType.BOOL
    if isinstance(value, I64):
        return TType.I64
    if isinstance(value, int):
        return TType.I32 if I32_MIN <= value <= I32_MAX else TType.I64
    if isinstance(value, float):
        return TType.DOUBLE
    if isinstance(value, (str, bytes, bytearray, memoryview)):
        return TType.STRING
    if isinstance(value, Struct):
        return TType.STRUCT
    if isinstance(value, dict):
        return TType.MAP
    if isinstance(value, (ThriftSet, set, frozenset)):
        return TType.SET
    if isinstance(value, (list, tuple)):
        return TType.LIST
    raise EncodeError(f"Cannot encode value of type {type(value).__name__}")
