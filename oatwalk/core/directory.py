"""
Dex-File Directory Walker
==========================

The dex-file records of an OAT image are packed back to back after the
key-value store, and each record's length is only known once it has
been decoded (it embeds a variable-length location string and a class
offset table sized by the embedded DEX module).  There is therefore no
random access: reaching record *n* means decoding records ``0 .. n``.

A decode failure ends the walk.  Record boundaries are self-describing,
so once one record is malformed nothing after it can be located.

Record layout (little-endian)::

    uint32  dex_file_location_size
    uint8   dex_file_location_data[dex_file_location_size]
    uint32  dex_file_location_checksum
    uint32  dex_file_offset          (file-relative, -> "dex\\n" module)
    uint32  class_offsets[class_defs_size of that module]

References:
    - Android Open Source Project. art/runtime/oat_file.cc
      (``OatFile::Setup``, ``OatFile::GetOatDexFile``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, Optional, Union

from oatwalk.core.errors import OatDecodeError, OatIndexError
from oatwalk.parsers.dex_parser import DexCapability, read_class_defs_size

if TYPE_CHECKING:
    from oatwalk.core.image import OatFile


class OatDexFileData:
    """One decoded dex-file record.

    Attributes:
        location: Location string bytes, compared by exact length and
            content (not NUL-terminated in the image).
        location_checksum: Checksum of the original dex file.
        dex_file_offset: File-relative offset of the embedded module.
        dex_file_pointer: Absolute address of the embedded module.
        class_definition_offsets: One file-relative class record offset
            per class definition, in the module's class_def order.
        address: Absolute address of the record.
        record_size: Number of bytes the record occupies in the stream.
    """
    __slots__ = (
        "location", "location_checksum", "dex_file_offset", "dex_file_pointer",
        "class_definition_offsets", "address", "record_size",
    )

    def __init__(self) -> None:
        self.location: bytes = b""
        self.location_checksum: int = 0
        self.dex_file_offset: int = 0
        self.dex_file_pointer: int = 0
        self.class_definition_offsets: tuple[int, ...] = ()
        self.address: int = 0
        self.record_size: int = 0

    @property
    def location_string(self) -> str:
        return self.location.decode("utf-8", errors="replace")


class OatDexFile:
    """A dex-file record bound to its image and its position in the stream.

    ``oat_file`` is a plain back-reference; the image (and the caller's
    buffer behind it) must outlive this record.
    """
    __slots__ = ("oat_file", "index", "data", "_dex")

    def __init__(self, oat_file: OatFile, index: int, data: OatDexFileData) -> None:
        self.oat_file = oat_file
        self.index = index
        self.data = data
        self._dex: Optional[DexCapability] = None

    @property
    def location(self) -> str:
        return self.data.location_string

    @property
    def dex(self) -> DexCapability:
        """DEX parser bound to the embedded module (created on first use)."""
        if self._dex is None:
            self._dex = self.oat_file.dex_factory(
                self.oat_file.region, self.data.dex_file_pointer
            )
        return self._dex

    def __repr__(self) -> str:
        return f"OatDexFile(index={self.index}, location={self.location!r})"


# ---------------------------------------------------------------------------
# Decode primitive
# ---------------------------------------------------------------------------

def decode_next(oat_file: OatFile, cursor: int) -> tuple[OatDexFileData, int]:
    """Decode the record at *cursor*.

    Returns:
        ``(record, next_cursor)`` where *next_cursor* is just past the
        record.

    Raises:
        OatDecodeError: Any part of the record, or the embedded DEX header
            it references, lies outside ``[begin, end)``.
    """
    region = oat_file.region
    data = OatDexFileData()
    data.address = cursor

    location_size = region.u32(cursor, "dex file location size")
    cursor += 4
    data.location = region.read_bytes(cursor, location_size, "dex file location")
    cursor += location_size

    data.location_checksum = region.u32(cursor, "dex file location checksum")
    cursor += 4
    data.dex_file_offset = region.u32(cursor, "dex file offset")
    cursor += 4

    dex_pointer = oat_file.pointer_from_file_offset(data.dex_file_offset)
    if dex_pointer is None:
        raise OatDecodeError("dex file offset is zero", address=cursor - 4)
    data.dex_file_pointer = dex_pointer

    class_defs_size = read_class_defs_size(region, dex_pointer)
    data.class_definition_offsets = region.u32_array(
        cursor, class_defs_size, "class definition offsets"
    )
    cursor += 4 * class_defs_size

    data.record_size = cursor - data.address
    return data, cursor


# ---------------------------------------------------------------------------
# Walk operations
# ---------------------------------------------------------------------------

def iter_dex_files(oat_file: OatFile) -> Iterator[OatDexFile]:
    """Yield every dex-file record from the start of the stream.

    Each call restarts from ``dex_file_stream_start``.  A malformed record
    raises :class:`OatDecodeError` (with its ``index``) and ends the walk.
    """
    cursor = oat_file.dex_file_stream_start
    for index in range(oat_file.header.dex_file_count):
        try:
            data, cursor = decode_next(oat_file, cursor)
        except OatDecodeError as exc:
            oat_file.logger.error(
                "Error decoding oat dex file #%d: %s", index, exc.message,
                index=index, address=exc.address,
            )
            raise exc.with_context(index=index) from exc
        yield OatDexFile(oat_file, index, data)


def get_oat_dex_file(oat_file: OatFile, index: int) -> OatDexFile:
    """Return record *index*, decoding every record before it.

    Raises:
        OatIndexError: ``index`` is negative or not below ``dex_file_count``.
        OatDecodeError: A record up to and including *index* is malformed.
    """
    count = oat_file.header.dex_file_count
    if not 0 <= index < count:
        raise OatIndexError(f"dex file index {index} out of range (dex_file_count={count})")
    walk = iter_dex_files(oat_file)
    for _ in range(index):
        next(walk)
    return next(walk)


def find_dex_file(oat_file: OatFile, location: Union[str, bytes]) -> Optional[OatDexFile]:
    """Return the first record whose location equals *location* exactly.

    Prefixes, suffixes and case variants do not match.  Returns ``None``
    when every record was decoded and none matched.

    Raises:
        OatDecodeError: A record was malformed before a match was found,
            so whether a later record matches cannot be decided.
    """
    wanted = location.encode("utf-8") if isinstance(location, str) else bytes(location)
    for oat_dex_file in iter_dex_files(oat_file):
        data = oat_dex_file.data
        if len(data.location) == len(wanted) and data.location == wanted:
            return oat_dex_file
    return None
