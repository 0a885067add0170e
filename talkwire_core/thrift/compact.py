"""Thrift compact protocol reader and writer."""

from __future__ import annotations

import struct

from ..errors import DecodeError, EncodeError
from ._buffer import ByteReader
from .values import MessageHeader, MessageKind, TType

PROTOCOL_ID = 0x82
VERSION = 1
_VERSION_MASK = 0x1F
_KIND_SHIFT = 5

# Compact type nibbles
_CT_STOP = 0
_CT_BOOLEAN_TRUE = 1
_CT_BOOLEAN_FALSE = 2
_CT_BYTE = 3
_CT_I16 = 4
_CT_I32 = 5
_CT_I64 = 6
_CT_DOUBLE = 7
_CT_BINARY = 8
_CT_LIST = 9
_CT_SET = 10
_CT_MAP = 11
_CT_STRUCT = 12

_TO_COMPACT: dict[TType, int] = {
    TType.STOP: _CT_STOP,
    TType.BOOL: _CT_BOOLEAN_TRUE,
    TType.BYTE: _CT_BYTE,
    TType.I16: _CT_I16,
    TType.I32: _CT_I32,
    TType.I64: _CT_I64,
    TType.DOUBLE: _CT_DOUBLE,
    TType.STRING: _CT_BINARY,
    TType.LIST: _CT_LIST,
    TType.SET: _CT_SET,
    TType.MAP: _CT_MAP,
    TType.STRUCT: _CT_STRUCT,
}

_FROM_COMPACT: dict[int, TType] = {
    _CT_STOP: TType.STOP,
    _CT_BOOLEAN_TRUE: TType.BOOL,
    _CT_BOOLEAN_FALSE: TType.BOOL,
    _CT_BYTE: TType.BYTE,
    _CT_I16: TType.I16,
    _CT_I32: TType.I32,
    _CT_I64: TType.I64,
    _CT_DOUBLE: TType.DOUBLE,
    _CT_BINARY: TType.STRING,
    _CT_LIST: TType.LIST,
    _CT_SET: TType.SET,
    _CT_MAP: TType.MAP,
    _CT_STRUCT: TType.STRUCT,
}


def _zigzag(value: int, bits: int) -> int:
    return (value << 1) ^ (value >> (bits - 1))


def _unzigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


class CompactReader(ByteReader):
    """Reads compact-protocol primitives, tracking field id deltas."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        super().__init__(data, offset)
        self._last_fid = 0
        self._fid_stack: list[int] = []
        self._bool_value: bool | None = None

    def _read_varint(self, max_bytes: int = 10) -> int:
        start = self.offset
        result = 0
        shift = 0
        for _ in range(max_bytes):
            byte = self.read_ubyte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
        raise DecodeError("Varint too long", start)

    def _ttype(self, nibble: int, at: int) -> TType:
        try:
            return _FROM_COMPACT[nibble]
        except KeyError:
            raise DecodeError(f"Unknown compact type {nibble}", at) from None

    def read_message_begin(self) -> MessageHeader:
        start = self.offset
        protocol_id = self.read_ubyte()
        if protocol_id != PROTOCOL_ID:
            raise DecodeError(f"Bad compact protocol id 0x{protocol_id:02x}", start)
        version_and_kind = self.read_ubyte()
        if version_and_kind & _VERSION_MASK != VERSION:
            raise DecodeError(
                f"Unsupported compact version {version_and_kind & _VERSION_MASK}",
                start + 1,
            )
        kind_value = (version_and_kind >> _KIND_SHIFT) & 0x07
        try:
            kind = MessageKind(kind_value)
        except ValueError:
            raise DecodeError(f"Unknown message kind {kind_value}", start + 1) from None
        seqid = self._read_varint(5) & 0xFFFFFFFF
        if seqid > 0x7FFFFFFF:
            seqid -= 1 << 32
        name_at = self.offset
        try:
            name = self.read_binary().decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError("Method name is not UTF-8", name_at) from None
        return MessageHeader(name=name, seqid=seqid, kind=kind)

    def read_struct_begin(self) -> None:
        self._fid_stack.append(self._last_fid)
        self._last_fid = 0

    def read_struct_end(self) -> None:
        self._last_fid = self._fid_stack.pop()

    def read_field_begin(self) -> tuple[TType, int]:
        at = self.offset
        header = self.read_ubyte()
        nibble = header & 0x0F
        if nibble == _CT_STOP:
            return TType.STOP, 0
        ttype = self._ttype(nibble, at)
        delta = header >> 4
        if delta:
            fid = self._last_fid + delta
        else:
            fid = _unzigzag(self._read_varint(3))
        self._last_fid = fid
        if ttype is TType.BOOL:
            self._bool_value = nibble == _CT_BOOLEAN_TRUE
        return ttype, fid

    def read_list_begin(self) -> tuple[TType, int]:
        at = self.offset
        header = self.read_ubyte()
        size = header >> 4
        if size == 15:
            size = self._read_varint(5)
        self.check_size(size)
        return self._ttype(header & 0x0F, at), size

    read_set_begin = read_list_begin

    def read_map_begin(self) -> tuple[TType, TType, int]:
        size = self._read_varint(5)
        if size == 0:
            return TType.STOP, TType.STOP, 0
        at = self.offset
        types = self.read_ubyte()
        self.check_size(size, 2)
        return self._ttype(types >> 4, at), self._ttype(types & 0x0F, at), size

    def read_bool(self) -> bool:
        if self._bool_value is not None:
            value = self._bool_value
            self._bool_value = None
            return value
        return self.read_ubyte() == _CT_BOOLEAN_TRUE

    def read_byte(self) -> int:
        return struct.unpack("!b", self.take(1))[0]

    def read_i16(self) -> int:
        return _unzigzag(self._read_varint(3))

    def read_i32(self) -> int:
        return _unzigzag(self._read_varint(5) & 0xFFFFFFFF)

    def read_i64(self) -> int:
        return _unzigzag(self._read_varint(10) & 0xFFFFFFFFFFFFFFFF)

    def read_double(self) -> float:
        return struct.unpack("<d", self.take(8))[0]

    def read_binary(self) -> bytes:
        size = self._read_varint(5)
        return self.take(size)


class CompactWriter:
    """Writes compact-protocol primitives into a growing buffer."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._last_fid = 0
        self._fid_stack: list[int] = []
        self._pending_bool_fid: int | None = None

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def _write_varint(self, value: int) -> None:
        while True:
            if value & ~0x7F == 0:
                self._buf.append(value)
                return
            self._buf.append((value & 0x7F) | 0x80)
            value >>= 7

    def write_message_begin(self, header: MessageHeader) -> None:
        self._buf.append(PROTOCOL_ID)
        self._buf.append(VERSION | (int(header.kind) << _KIND_SHIFT))
        self._write_varint(header.seqid & 0xFFFFFFFF)
        self.write_binary(header.name.encode("utf-8"))

    def write_struct_begin(self) -> None:
        self._fid_stack.append(self._last_fid)
        self._last_fid = 0

    def write_struct_end(self) -> None:
        self._last_fid = self._fid_stack.pop()

    def _write_field_header(self, nibble: int, fid: int) -> None:
        delta = fid - self._last_fid
        if 0 < delta <= 15:
            self._buf.append((delta << 4) | nibble)
        else:
            self._buf.append(nibble)
            self._write_varint(_zigzag(fid, 16) & 0xFFFF)
        self._last_fid = fid

    def write_field_begin(self, ttype: TType, fid: int) -> None:
        if not -(2**15) <= fid < 2**15:
            raise EncodeError(f"Field id {fid} out of i16 range")
        if ttype is TType.BOOL:
            # the value goes into the header, see write_bool
            self._pending_bool_fid = fid
            return
        self._write_field_header(_TO_COMPACT[ttype], fid)

    def write_field_stop(self) -> None:
        self._buf.append(_CT_STOP)

    def write_list_begin(self, etype: TType, size: int) -> None:
        nibble = _TO_COMPACT[etype]
        if size < 15:
            self._buf.append((size << 4) | nibble)
        else:
            self._buf.append(0xF0 | nibble)
            self._write_varint(size)

    write_set_begin = write_list_begin

    def write_map_begin(self, ktype: TType, vtype: TType, size: int) -> None:
        if size == 0:
            self._buf.append(0)
            return
        self._write_varint(size)
        self._buf.append((_TO_COMPACT[ktype] << 4) | _TO_COMPACT[vtype])

    def write_bool(self, value: bool) -> None:
        nibble = _CT_BOOLEAN_TRUE if value else _CT_BOOLEAN_FALSE
        if self._pending_bool_fid is not None:
            self._write_field_header(nibble, self._pending_bool_fid)
            self._pending_bool_fid = None
        else:
            self._buf.append(nibble)

    def write_i32(self, value: int) -> None:
        self._write_varint(_zigzag(value, 32) & 0xFFFFFFFF)

    def write_i64(self, value: int) -> None:
        self._write_varint(_zigzag(value, 64) & 0xFFFFFFFFFFFFFFFF)

    def write_double(self, value: float) -> None:
        self._buf += struct.pack("<d", value)

    def write_binary(self, value: bytes) -> None:
        self._write_varint(len(value))
        self._buf += value
