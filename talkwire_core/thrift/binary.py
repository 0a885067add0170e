"""Thrift binary protocol reader and writer."""

from __future__ import annotations

import struct

from ..errors import DecodeError, EncodeError
from ._buffer import ByteReader
from .values import MessageHeader, MessageKind, TType

VERSION_1 = 0x80010000
VERSION_MASK = 0xFFFF0000
_KIND_MASK = 0x000000FF

_KNOWN_TYPES = {int(t): t for t in TType}


class BinaryReader(ByteReader):
    """Reads binary-protocol primitives. Accepts strict and old-style envelopes."""

    def _ttype(self, value: int, at: int) -> TType:
        try:
            return _KNOWN_TYPES[value]
        except KeyError:
            raise DecodeError(f"Unknown binary type {value}", at) from None

    @staticmethod
    def _check_element_type(ttype: TType, at: int) -> None:
        # Void and stop elements occupy no bytes on the wire.
        if ttype in (TType.STOP, TType.VOID):
            raise DecodeError(f"Invalid container element type {ttype.name}", at)

    def _read_name(self, size: int) -> str:
        at = self.offset
        try:
            return self.take(size).decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError("Method name is not UTF-8", at) from None

    def read_message_begin(self) -> MessageHeader:
        start = self.offset
        size = self.read_i32()
        if size < 0:
            version = size & VERSION_MASK
            if version != VERSION_1:
                raise DecodeError(f"Bad binary protocol version 0x{version:08x}", start)
            kind_value = size & _KIND_MASK
            name = self._read_name(self.read_i32())
        else:
            name = self._read_name(size)
            kind_value = self.read_ubyte()
        try:
            kind = MessageKind(kind_value)
        except ValueError:
            raise DecodeError(f"Unknown message kind {kind_value}", start) from None
        seqid = self.read_i32()
        return MessageHeader(name=name, seqid=seqid, kind=kind)

    def read_struct_begin(self) -> None:
        pass

    def read_struct_end(self) -> None:
        pass

    def read_field_begin(self) -> tuple[TType, int]:
        at = self.offset
        ttype = self._ttype(self.read_ubyte(), at)
        if ttype is TType.STOP:
            return TType.STOP, 0
        return ttype, self.read_i16()

    def read_list_begin(self) -> tuple[TType, int]:
        at = self.offset
        etype = self._ttype(self.read_ubyte(), at)
        self._check_element_type(etype, at)
        size = self.read_i32()
        self.check_size(size)
        return etype, size

    read_set_begin = read_list_begin

    def read_map_begin(self) -> tuple[TType, TType, int]:
        at = self.offset
        ktype = self._ttype(self.read_ubyte(), at)
        vtype = self._ttype(self.read_ubyte(), at + 1)
        self._check_element_type(ktype, at)
        self._check_element_type(vtype, at + 1)
        size = self.read_i32()
        self.check_size(size, 2)
        return ktype, vtype, size

    def read_bool(self) -> bool:
        return self.read_ubyte() != 0

    def read_byte(self) -> int:
        return struct.unpack("!b", self.take(1))[0]

    def read_i16(self) -> int:
        return struct.unpack("!h", self.take(2))[0]

    def read_i32(self) -> int:
        return struct.unpack("!i", self.take(4))[0]

    def read_i64(self) -> int:
        return struct.unpack("!q", self.take(8))[0]

    def read_double(self) -> float:
        return struct.unpack("!d", self.take(8))[0]

    def read_binary(self) -> bytes:
        return self.take(self.read_i32())


class BinaryWriter:
    """Writes strict binary-protocol primitives."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def write_message_begin(self, header: MessageHeader) -> None:
        self._buf += struct.pack("!I", VERSION_1 | int(header.kind))
        self.write_binary(header.name.encode("utf-8"))
        self.write_i32(header.seqid)

    def write_struct_begin(self) -> None:
        pass

    def write_struct_end(self) -> None:
        pass

    def write_field_begin(self, ttype: TType, fid: int) -> None:
        if not -(2**15) <= fid < 2**15:
            raise EncodeError(f"Field id {fid} out of i16 range")
        self._buf += struct.pack("!bh", int(ttype), fid)

    def write_field_stop(self) -> None:
        self._buf.append(int(TType.STOP))

    def write_list_begin(self, etype: TType, size: int) -> None:
        self._buf += struct.pack("!bi", int(etype), size)

    write_set_begin = write_list_begin

    def write_map_begin(self, ktype: TType, vtype: TType, size: int) -> None:
        self._buf += struct.pack("!bbi", int(ktype), int(vtype), size)

    def write_bool(self, value: bool) -> None:
        self._buf.append(1 if value else 0)

    def write_i32(self, value: int) -> None:
        self._buf += struct.pack("!i", value)

    def write_i64(self, value: int) -> None:
        self._buf += struct.pack("!q", value)

    def write_double(self, value: float) -> None:
        self._buf += struct.pack("!d", value)

    def write_binary(self, value: bytes) -> None:
        self._buf += struct.pack("!i", len(value))
        self._buf += value
