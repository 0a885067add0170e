"""Bounds-checked byte cursor shared by the protocol readers."""

from __future__ import annotations

from ..errors import DecodeError


class ByteReader:
    """Cursor over an immutable byte buffer."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = bytes(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def take(self, count: int) -> bytes:
        """Consume ``count`` bytes or fail without moving the cursor."""
        if count < 0:
            raise DecodeError(f"Negative length {count}", self.offset)
        end = self.offset + count
        if end > len(self._data):
            raise DecodeError(
                f"Truncated input: need {count} bytes, have {self.remaining}",
                self.offset,
            )
        chunk = self._data[self.offset : end]
        self.offset = end
        return chunk

    def read_ubyte(self) -> int:
        return self.take(1)[0]

    def check_size(self, size: int, min_element_bytes: int = 1) -> None:
        """Reject container sizes the rest of the buffer cannot hold."""
        if size < 0:
            raise DecodeError(f"Negative container size {size}", self.offset)
        if size * min_element_bytes > self.remaining:
            raise DecodeError(
                f"Container size {size} exceeds remaining {self.remaining} bytes",
                self.offset,
            )
