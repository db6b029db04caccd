"""
Mapped Memory Region
=====================

Bounds-checked, read-only view over a mapped image.

Addresses handed around the core are absolute integers: the first byte
of the buffer lives at ``begin`` and the last readable byte at
``end - 1``.  Every read is validated against ``[begin, end)`` and
raises :class:`~oatwalk.core.errors.OatDecodeError` when it would cross
either edge.  Nothing here copies or mutates the underlying buffer.
"""

from __future__ import annotations

import struct
from typing import Any

from oatwalk.core.errors import OatDecodeError


_U16 = struct.Struct("<H")
_I16 = struct.Struct("<h")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")


class MappedRegion:
    """Read-only window ``[begin, end)`` over a bytes-like object.

    Args:
        memory: Any object supporting the buffer protocol (``bytes``,
            ``bytearray``, ``memoryview``, ``mmap.mmap``).
        begin: Absolute address of ``memory[0]``.
        end: Absolute address one past the last byte of the window.
    """

    __slots__ = ("_view", "begin", "end")

    def __init__(self, memory: Any, begin: int, end: int) -> None:
        view = memoryview(memory)
        if view.ndim != 1 or view.itemsize != 1:
            view = view.cast("B")
        self._view: memoryview = view[: end - begin]
        self.begin: int = begin
        self.end: int = end

    @property
    def size(self) -> int:
        return self.end - self.begin

    def contains(self, address: int, size: int = 1) -> bool:
        """Return ``True`` when ``[address, address + size)`` is readable."""
        return size >= 0 and self.begin <= address and address + size <= self.end

    def check(self, address: int, size: int, what: str) -> None:
        if not self.contains(address, size):
            raise OatDecodeError(
                f"{what} runs past the mapped range "
                f"[{self.begin:#x}, {self.end:#x}) ({size} bytes)",
                address=address,
            )

    def read(self, address: int, size: int, what: str = "read") -> memoryview:
        """Return a zero-copy view of *size* bytes at *address*."""
        self.check(address, size, what)
        start = address - self.begin
        return self._view[start:start + size]

    def read_bytes(self, address: int, size: int, what: str = "read") -> bytes:
        return bytes(self.read(address, size, what))

    def u16(self, address: int, what: str = "u16") -> int:
        self.check(address, 2, what)
        return _U16.unpack_from(self._view, address - self.begin)[0]

    def i16(self, address: int, what: str = "i16") -> int:
        self.check(address, 2, what)
        return _I16.unpack_from(self._view, address - self.begin)[0]

    def u32(self, address: int, what: str = "u32") -> int:
        self.check(address, 4, what)
        return _U32.unpack_from(self._view, address - self.begin)[0]

    def i32(self, address: int, what: str = "i32") -> int:
        self.check(address, 4, what)
        return _I32.unpack_from(self._view, address - self.begin)[0]

    def u32_array(self, address: int, count: int, what: str = "u32 array") -> tuple[int, ...]:
        self.check(address, count * 4, what)
        return struct.unpack_from(f"<{count}I", self._view, address - self.begin)

    def uleb128(self, address: int, what: str = "uleb128") -> tuple[int, int]:
        """Decode a ULEB128 value at *address*.

        Returns:
            Tuple of (decoded_value, address just past the encoding).
        """
        result = 0
        shift = 0
        cursor = address
        while True:
            self.check(cursor, 1, what)
            byte = self._view[cursor - self.begin]
            result |= (byte & 0x7F) << shift
            cursor += 1
            if (byte & 0x80) == 0:
                return result, cursor
            shift += 7
            if shift >= 35:
                raise OatDecodeError(f"{what} longer than 5 bytes", address=address)

    def find_byte(self, address: int, value: int, limit: int) -> int:
        """Return the address of the first *value* byte in ``[address, limit)``.

        Returns ``-1`` when not found before *limit* (clamped to ``end``).
        """
        limit = min(limit, self.end)
        if address < self.begin or address >= limit:
            return -1
        start = address - self.begin
        pos = self._view[start:limit - self.begin].tobytes().find(bytes((value,)))
        return -1 if pos < 0 else address + pos
