"""
OAT Class Record Decoder
=========================

Decodes the per-class record an OAT dex-file's class offset table points
at, and looks up the compiled-code offset record for one method.

Record layout (little-endian)::

    int16   status
    uint16  type            0 = all compiled, 1 = some compiled, 2 = none
    uint32  bitmap_size     (type 1 only)
    uint8   bitmap[]        (type 1 only, bit i set = method i compiled)
    OatMethodOffsets[]      (absent for type 2)

    OatMethodOffsets:
        uint32  code_offset  (file-relative)

The method table has no stored length; an entry is only read when asked
for, and that read is bounds-checked against the end of the image.

References:
    - Android Open Source Project. art/runtime/oat_file.cc
      (``OatFile::OatClass`` constructor, ``OatClass::GetOatMethodOffsets``).
    - Android Open Source Project. art/runtime/oat.h (``OatClassType``).
"""

from __future__ import annotations

import enum
from typing import Optional

from oatwalk.core.errors import OatDecodeError
from oatwalk.core.memory import MappedRegion


class OatClassType(enum.IntEnum):
    """How many of a class's methods were compiled ahead of time."""
    ALL_COMPILED = 0
    SOME_COMPILED = 1
    NONE_COMPILED = 2


METHOD_OFFSETS_SIZE: int = 4


class OatClassData:
    """Decoded class record.

    Attributes:
        address: Absolute address of the record.
        status: Class status at compile time (``mirror::Class::Status``).
        type: Compilation coverage of the class.
        bitmap: Compiled-method bitmap (``SOME_COMPILED`` only).
        methods_pointer: Absolute address of the first method offsets
            entry, ``None`` for ``NONE_COMPILED``.
    """
    __slots__ = ("address", "status", "type", "bitmap", "methods_pointer")

    def __init__(self) -> None:
        self.address: int = 0
        self.status: int = 0
        self.type: OatClassType = OatClassType.NONE_COMPILED
        self.bitmap: Optional[bytes] = None
        self.methods_pointer: Optional[int] = None


class OatMethodOffsets:
    """Compiled-code offset record for one method."""
    __slots__ = ("address", "code_offset")

    def __init__(self, address: int, code_offset: int) -> None:
        self.address = address
        self.code_offset = code_offset

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OatMethodOffsets):
            return NotImplemented
        return self.address == other.address and self.code_offset == other.code_offset

    def __hash__(self) -> int:
        return hash((self.address, self.code_offset))

    def __repr__(self) -> str:
        return f"OatMethodOffsets(address={self.address:#x}, code_offset={self.code_offset:#x})"


def decode_oat_class(region: MappedRegion, address: Optional[int]) -> OatClassData:
    """Decode the class record at *address*.

    Args:
        region: Mapped image region.
        address: Resolved record address; ``None`` (a zero file offset)
            is a decode failure, since every class has a record.

    Raises:
        OatDecodeError: The record lies outside the image or its type
            field is unknown.
    """
    if address is None:
        raise OatDecodeError("class record offset is zero")

    data = OatClassData()
    data.address = address
    data.status = region.i16(address, "OatClass status")
    raw_type = region.u16(address + 2, "OatClass type")
    try:
        data.type = OatClassType(raw_type)
    except ValueError:
        raise OatDecodeError(f"invalid OatClass type {raw_type}", address=address) from None

    cursor = address + 4
    if data.type is OatClassType.SOME_COMPILED:
        bitmap_size = region.u32(cursor, "OatClass bitmap size")
        cursor += 4
        data.bitmap = region.read_bytes(cursor, bitmap_size, "OatClass bitmap")
        cursor += bitmap_size

    if data.type is not OatClassType.NONE_COMPILED:
        data.methods_pointer = cursor
    return data


def _bit_is_set(bitmap: bytes, index: int) -> bool:
    byte_index = index >> 3
    if byte_index >= len(bitmap):
        return False
    return bool(bitmap[byte_index] & (1 << (index & 7)))


def _bits_set_before(bitmap: bytes, index: int) -> int:
    """Count set bits in positions ``[0, index)``."""
    full_bytes, rest = divmod(index, 8)
    count = sum(bin(b).count("1") for b in bitmap[:full_bytes])
    if rest:
        count += bin(bitmap[full_bytes] & ((1 << rest) - 1)).count("1")
    return count


def get_oat_method_offsets(
    region: MappedRegion, class_data: OatClassData, method_index: int
) -> Optional[OatMethodOffsets]:
    """Return the compiled-code record of method *method_index*, if any.

    ``None`` means the method was left to the interpreter; it is not an
    error.

    Raises:
        OatDecodeError: The table entry lies outside the image.
    """
    if class_data.methods_pointer is None:
        return None

    if class_data.bitmap is None:
        table_index = method_index
    else:
        if not _bit_is_set(class_data.bitmap, method_index):
            return None
        table_index = _bits_set_before(class_data.bitmap, method_index)

    entry = class_data.methods_pointer + table_index * METHOD_OFFSETS_SIZE
    return OatMethodOffsets(entry, region.u32(entry, "OatMethodOffsets"))
