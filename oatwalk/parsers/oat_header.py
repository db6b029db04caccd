"""
OAT Header Parser
==================

Struct-based decoder for the fixed-size header at the start of every
Android Runtime OAT image, plus the packed key-value store that directly
follows it.

Two header layouts of the same record family are understood:

    - ``045`` (Android 5.1): carries three portable-compiler trampoline
      offsets, 84 bytes.
    - ``064`` (Android 6.0): portable trampolines removed, 72 bytes.

The dex-file records, class records and method offset records that follow
the header share one layout across both versions.

All fields are little-endian.  The header is decoded in place from the
mapped image; nothing is copied except the scalar field values.

References:
    - Android Open Source Project. art/runtime/oat.h (``OatHeader``).
    - Android Open Source Project. art/runtime/oat.cc
      (``OatHeader::IsValid``, ``OatHeader::GetStoreValueByKey``).
"""

from __future__ import annotations

from typing import Optional

from oatwalk.core.errors import OatDecodeError
from oatwalk.core.memory import MappedRegion


# ---------------------------------------------------------------------------
# OAT Constants
# ---------------------------------------------------------------------------

OAT_MAGIC: bytes = b"oat\n"
OAT_VERSION_045: bytes = b"045\x00"
OAT_VERSION_064: bytes = b"064\x00"

# Trampoline offset fields in header order, per version
_TRAMPOLINES_045: tuple[str, ...] = (
    "interpreter_to_interpreter_bridge_offset",
    "interpreter_to_compiled_code_bridge_offset",
    "jni_dlsym_lookup_offset",
    "portable_imt_conflict_trampoline_offset",
    "portable_resolution_trampoline_offset",
    "portable_to_interpreter_bridge_offset",
    "quick_generic_jni_trampoline_offset",
    "quick_imt_conflict_trampoline_offset",
    "quick_resolution_trampoline_offset",
    "quick_to_interpreter_bridge_offset",
)
_TRAMPOLINES_064: tuple[str, ...] = tuple(
    name for name in _TRAMPOLINES_045 if not name.startswith("portable_")
)

_LAYOUTS: dict[bytes, tuple[str, ...]] = {
    OAT_VERSION_045: _TRAMPOLINES_045,
    OAT_VERSION_064: _TRAMPOLINES_064,
}
SUPPORTED_VERSIONS: frozenset[bytes] = frozenset(_LAYOUTS)

# magic, version, checksum, isa, isa features, dex count, executable offset
_LEADING_FIELDS_SIZE: int = 28
# image_patch_delta, image oat checksum, image oat data begin, kv store size
_TRAILING_FIELDS_SIZE: int = 16


def header_size_for_version(version: bytes) -> int:
    """Return the fixed header size for *version*.

    Unknown versions use the newest known layout.
    """
    trampolines = _LAYOUTS.get(version, _TRAMPOLINES_064)
    return _LEADING_FIELDS_SIZE + 4 * len(trampolines) + _TRAILING_FIELDS_SIZE


def is_valid_header(data: bytes | bytearray | memoryview) -> bool:
    """Return ``True`` if *data* starts with a recognised OAT signature.

    Only the magic and version bytes are examined; counts and region sizes
    are left to the decoders that consume them.
    """
    head = bytes(memoryview(data)[:8])
    if len(head) < 8:
        return False
    return head[:4] == OAT_MAGIC and head[4:8] in SUPPORTED_VERSIONS


# ---------------------------------------------------------------------------
# Parsed header
# ---------------------------------------------------------------------------

class OatHeader:
    """Parsed OAT header fields.

    Attributes mirror ``art::OatHeader``.  ``address`` is the absolute
    address of the header (the image ``begin``) and ``header_size`` the
    size of the fixed portion, i.e. the offset of the key-value store.
    """
    __slots__ = (
        "address", "magic", "version", "adler32_checksum",
        "instruction_set", "instruction_set_features_bitmap",
        "dex_file_count", "executable_offset", "trampolines",
        "image_patch_delta", "image_file_location_oat_checksum",
        "image_file_location_oat_data_begin", "key_value_store_size",
        "header_size",
    )

    def __init__(self) -> None:
        self.address: int = 0
        self.magic: bytes = b""
        self.version: bytes = b""
        self.adler32_checksum: int = 0
        self.instruction_set: int = 0
        self.instruction_set_features_bitmap: int = 0
        self.dex_file_count: int = 0
        self.executable_offset: int = 0
        self.trampolines: dict[str, int] = {}
        self.image_patch_delta: int = 0
        self.image_file_location_oat_checksum: int = 0
        self.image_file_location_oat_data_begin: int = 0
        self.key_value_store_size: int = 0
        self.header_size: int = 0

    @property
    def version_string(self) -> str:
        return self.version.rstrip(b"\x00").decode("ascii", errors="replace")

    @property
    def is_valid(self) -> bool:
        return self.magic == OAT_MAGIC and self.version in SUPPORTED_VERSIONS

    @classmethod
    def parse(cls, region: MappedRegion, address: int) -> OatHeader:
        """Decode the fixed header at *address*.

        Raises:
            OatDecodeError: The region is shorter than the fixed header.
        """
        h = cls()
        h.address = address
        h.magic = region.read_bytes(address, 4, "OAT magic")
        h.version = region.read_bytes(address + 4, 4, "OAT version")
        h.header_size = header_size_for_version(h.version)
        region.check(address, h.header_size, "OAT header")

        (
            h.adler32_checksum,
            h.instruction_set,
            h.instruction_set_features_bitmap,
            h.dex_file_count,
            h.executable_offset,
        ) = region.u32_array(address + 8, 5, "OAT header")

        cursor = address + _LEADING_FIELDS_SIZE
        names = _LAYOUTS.get(h.version, _TRAMPOLINES_064)
        values = region.u32_array(cursor, len(names), "OAT trampolines")
        h.trampolines = dict(zip(names, values))
        cursor += 4 * len(names)

        h.image_patch_delta = region.i32(cursor, "image_patch_delta")
        (
            h.image_file_location_oat_checksum,
            h.image_file_location_oat_data_begin,
            h.key_value_store_size,
        ) = region.u32_array(cursor + 4, 3, "OAT header")
        return h


# ---------------------------------------------------------------------------
# Key-value store
# ---------------------------------------------------------------------------

def read_key_value_store(region: MappedRegion, start: int, size: int) -> dict[str, str]:
    """Decode the ``key\\0value\\0`` pairs in ``[start, start + size)``.

    Raises:
        OatDecodeError: The store extends past the mapped range, or a key
            or value is not terminated inside the declared store size.
    """
    region.check(start, size, "key-value store")
    store: dict[str, str] = {}
    limit = start + size
    cursor = start
    while cursor < limit:
        key_end = region.find_byte(cursor, 0, limit)
        if key_end < 0:
            raise OatDecodeError("unterminated key in key-value store", address=cursor)
        value_end = region.find_byte(key_end + 1, 0, limit)
        if value_end < 0:
            raise OatDecodeError("unterminated value in key-value store", address=key_end + 1)
        key = region.read_bytes(cursor, key_end - cursor).decode("utf-8", errors="replace")
        value = region.read_bytes(key_end + 1, value_end - key_end - 1).decode(
            "utf-8", errors="replace"
        )
        store[key] = value
        cursor = value_end + 1
    return store


def get_store_value(
    region: MappedRegion, start: int, size: int, key: str
) -> Optional[str]:
    """Return the value stored under *key*, or ``None`` when absent."""
    return read_key_value_store(region, start, size).get(key)
