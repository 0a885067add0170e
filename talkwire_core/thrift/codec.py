"""Schema-less Thrift codec.

Decoding is a recursive descent driven only by the type tags found in the
stream. Wire types the value model has no place for (byte, i16, void) are
consumed and dropped so that newer server schemas do not break older
clients. A tag the protocol itself does not define cannot be skipped and
fails the decode.
"""

from __future__ import annotations

from typing import Any

from ..errors import DecodeError, EncodeError
from .binary import BinaryReader, BinaryWriter
from .compact import CompactReader, CompactWriter
from .values import (
    I32_MAX,
    I32_MIN,
    I64,
    I64_MAX,
    I64_MIN,
    MessageHeader,
    Protocol,
    Struct,
    ThriftSet,
    TType,
    looks_like_text,
    ttype_of,
)

MAX_DEPTH = 64

_SKIPPED = object()

Reader = CompactReader | BinaryReader
Writer = CompactWriter | BinaryWriter


def _reader(data: bytes, protocol: Protocol) -> Reader:
    if protocol is Protocol.BINARY:
        return BinaryReader(data)
    return CompactReader(data)


def _writer(protocol: Protocol) -> Writer:
    if protocol is Protocol.BINARY:
        return BinaryWriter()
    return CompactWriter()


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def encode(value: Struct, *, protocol: Protocol = Protocol.COMPACT) -> bytes:
    """Encode a struct without envelope.

    Raises:
        EncodeError: If ``value`` is not a ``Struct`` or contains a value
            with no wire representation.
    """
    if not isinstance(value, Struct):
        raise EncodeError("Top-level value must be a Struct")
    writer = _writer(protocol)
    _write_struct(writer, value, 0)
    return writer.getvalue()


def decode(data: bytes, *, protocol: Protocol = Protocol.COMPACT) -> Struct:
    """Decode a struct without envelope.

    Raises:
        DecodeError: On malformed, truncated or unterminated input.
    """
    return _read_struct(_reader(data, protocol), 0)


def encode_message(
    header: MessageHeader,
    body: Struct,
    *,
    protocol: Protocol = Protocol.COMPACT,
) -> bytes:
    """Encode an envelope followed by its args or result struct."""
    if not isinstance(body, Struct):
        raise EncodeError("Message body must be a Struct")
    writer = _writer(protocol)
    writer.write_message_begin(header)
    _write_struct(writer, body, 0)
    return writer.getvalue()


def decode_message(
    data: bytes, *, protocol: Protocol = Protocol.COMPACT
) -> tuple[MessageHeader, Struct]:
    """Decode an envelope and the struct it wraps."""
    reader = _reader(data, protocol)
    header = reader.read_message_begin()
    return header, _read_struct(reader, 0)


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------


def _read_struct(reader: Reader, depth: int) -> Struct:
    if depth > MAX_DEPTH:
        raise DecodeError(f"Nesting deeper than {MAX_DEPTH}", reader.offset)
    fields = Struct()
    reader.read_struct_begin()
    while True:
        ttype, fid = reader.read_field_begin()
        if ttype is TType.STOP:
            break
        value = _read_value(reader, ttype, depth + 1)
        if value is not _SKIPPED:
            fields[fid] = value
    reader.read_struct_end()
    return fields


def _read_value(reader: Reader, ttype: TType, depth: int) -> Any:
    if ttype is TType.STRUCT:
        return _read_struct(reader, depth)
    if ttype is TType.I32:
        return reader.read_i32()
    if ttype is TType.I64:
        return I64(reader.read_i64())
    if ttype is TType.STRING:
        raw = reader.read_binary()
        return raw.decode("utf-8") if looks_like_text(raw) else raw
    if ttype is TType.BOOL:
        return reader.read_bool()
    if ttype is TType.DOUBLE:
        return reader.read_double()
    if ttype in (TType.LIST, TType.SET):
        if depth > MAX_DEPTH:
            raise DecodeError(f"Nesting deeper than {MAX_DEPTH}", reader.offset)
        etype, size = reader.read_list_begin()
        items = ThriftSet() if ttype is TType.SET else []
        for _ in range(size):
            item = _read_value(reader, etype, depth + 1)
            if item is not _SKIPPED:
                items.append(item)
        return items
    if ttype is TType.MAP:
        if depth > MAX_DEPTH:
            raise DecodeError(f"Nesting deeper than {MAX_DEPTH}", reader.offset)
        ktype, vtype, size = reader.read_map_begin()
        entries: dict[Any, Any] = {}
        for _ in range(size):
            at = reader.offset
            key = _read_value(reader, ktype, depth + 1)
            item = _read_value(reader, vtype, depth + 1)
            if key is _SKIPPED or item is _SKIPPED:
                continue
            try:
                entries[key] = item
            except TypeError:
                raise DecodeError("Unhashable map key", at) from None
        return entries
    if ttype is TType.BYTE:
        reader.read_byte()
        return _SKIPPED
    if ttype is TType.I16:
        reader.read_i16()
        return _SKIPPED
    if ttype is TType.VOID:
        return _SKIPPED
    raise DecodeError(f"Unsupported type {ttype!r}", reader.offset)


# -----------------------------------------------------------------------------
# Encoding
# -----------------------------------------------------------------------------


def _container_type(values: list[Any], what: str) -> TType:
    types = {ttype_of(v) for v in values}
    if not types:
        return TType.STRUCT
    if types == {TType.I32, TType.I64}:
        return TType.I64
    if len(types) > 1:
        names = ", ".join(sorted(t.name for t in types))
        raise EncodeError(f"Mixed {what} types: {names}")
    return types.pop()


def _write_struct(writer: Writer, value: Struct, depth: int) -> None:
    if depth > MAX_DEPTH:
        raise EncodeError(f"Nesting deeper than {MAX_DEPTH}")
    for fid in value:
        if isinstance(fid, bool) or not isinstance(fid, int):
            raise EncodeError(f"Field id must be int, got {fid!r}")
    writer.write_struct_begin()
    for fid in sorted(value):
        item = value[fid]
        if item is None:
            continue
        ttype = ttype_of(item)
        writer.write_field_begin(ttype, fid)
        _write_value(writer, ttype, item, depth + 1)
    writer.write_field_stop()
    writer.write_struct_end()


def _write_value(writer: Writer, ttype: TType, value: Any, depth: int) -> None:
    if ttype is TType.STRUCT:
        _write_struct(writer, value, depth)
    elif ttype is TType.BOOL:
        writer.write_bool(value)
    elif ttype is TType.I32:
        if not I32_MIN <= value <= I32_MAX:
            raise EncodeError(f"{value} does not fit in i32")
        writer.write_i32(value)
    elif ttype is TType.I64:
        if not I64_MIN <= value <= I64_MAX:
            raise EncodeError(f"{value} does not fit in i64")
        writer.write_i64(value)
    elif ttype is TType.DOUBLE:
        writer.write_double(value)
    elif ttype is TType.STRING:
        writer.write_binary(
            value.encode("utf-8") if isinstance(value, str) else bytes(value)
        )
    elif ttype in (TType.LIST, TType.SET):
        if depth > MAX_DEPTH:
            raise EncodeError(f"Nesting deeper than {MAX_DEPTH}")
        items = list(value)
        if any(item is None for item in items):
            raise EncodeError("Containers cannot hold None")
        etype = _container_type(items, "element")
        writer.write_list_begin(etype, len(items))
        for item in items:
            _write_value(writer, etype, item, depth + 1)
    elif ttype is TType.MAP:
        if depth > MAX_DEPTH:
            raise EncodeError(f"Nesting deeper than {MAX_DEPTH}")
        if any(k is None or v is None for k, v in value.items()):
            raise EncodeError("Maps cannot hold None")
        ktype = _container_type(list(value.keys()), "key")
        vtype = _container_type(list(value.values()), "value")
        writer.write_map_begin(ktype, vtype, len(value))
        for key, item in value.items():
            _write_value(writer, ktype, key, depth + 1)
            _write_value(writer, vtype, item, depth + 1)
    else:  # pragma: no cover - ttype_of never returns other tags
        raise EncodeError(f"Cannot encode {ttype!r}")
