"""
Oatwalk Data Models
====================

Pydantic-based report models produced by the Oatwalk inspection engine
and rendered by the CLI.  The navigation core itself works on slotted
record classes that reference the mapped image; these models are the
detached, serialisable summaries of what the core found.

References:
    - Android Open Source Project. art/runtime/oat.h, oat_file.h.
    - Google. (2024). DEX Format. Android Open Source Project.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class InstructionSet(str, enum.Enum):
    """Target instruction sets an OAT image may be compiled for."""
    NONE = "none"
    ARM = "arm"
    ARM64 = "arm64"
    THUMB2 = "thumb2"
    X86 = "x86"
    X86_64 = "x86_64"
    MIPS = "mips"
    MIPS64 = "mips64"


class LookupStatus(str, enum.Enum):
    """Outcome of a search through the image."""
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILURE = "failure"


class ImageFormat(str, enum.Enum):
    """Container the OAT image was loaded from."""
    RAW = "raw"
    ELF = "elf"


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------

class HeaderSummary(BaseModel):
    """Decoded OAT header fields.

    Attributes:
        version: OAT version string (e.g. ``"064"``).
        valid: Whether magic and version passed the header validator.
        instruction_set: Instruction set the image targets.
        dex_file_count: Number of embedded dex-file records.
        executable_offset: File offset of the executable code region.
        key_value_store_size: Byte length of the key-value store.
        header_size: Size of the fixed header for this version.
    """
    version: str = ""
    valid: bool = False
    adler32_checksum: int = 0
    instruction_set: InstructionSet = InstructionSet.NONE
    instruction_set_features: int = 0
    dex_file_count: int = 0
    executable_offset: int = 0
    image_patch_delta: int = 0
    key_value_store_size: int = 0
    header_size: int = 0
    trampolines: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Dex-file records
# ---------------------------------------------------------------------------

class DexFileSummary(BaseModel):
    """One embedded dex-file record."""
    index: int = 0
    location: str = ""
    location_checksum: int = 0
    dex_file_offset: int = 0
    class_def_count: int = 0
    record_size: int = 0


# ---------------------------------------------------------------------------
# Method lookup
# ---------------------------------------------------------------------------

class MethodLookup(BaseModel):
    """Result of resolving ``class -> method -> compiled code``.

    ``status`` is about the search.  ``compiled`` is about the method once
    found: a found method with ``compiled == False`` runs interpreted.

    Attributes:
        status: Tri-state search outcome.
        class_descriptor: Class descriptor looked up (``Lpkg/Name;``).
        method_name: Method name looked up.
        signature: Method signature (``(I)V``).
        dex_location: Location of the dex file the class was found in.
        class_def_index: Index of the class in its DEX module.
        class_status: OAT class status field.
        class_type: OAT class compilation type.
        method_kind: ``"direct"`` or ``"virtual"``.
        class_method_index: Method position in the class data.
        access_flags: Raw DEX access flags of the method.
        modifiers: Names of the access flags that are set.
        compiled: Whether the method has ahead-of-time compiled code.
        code_offset: File-relative compiled code offset.
        entry_point: Absolute entry-point address.
        code_pointer: Entry point with instruction-set tagging removed.
        error: Failure description when ``status`` is ``failure``.
    """
    status: LookupStatus = LookupStatus.NOT_FOUND
    class_descriptor: str = ""
    method_name: str = ""
    signature: str = ""
    dex_location: Optional[str] = None
    class_def_index: Optional[int] = None
    class_status: Optional[int] = None
    class_type: Optional[str] = None
    method_kind: Optional[str] = None
    class_method_index: Optional[int] = None
    access_flags: Optional[int] = None
    modifiers: list[str] = Field(default_factory=list)
    compiled: bool = False
    code_offset: Optional[int] = None
    entry_point: Optional[int] = None
    code_pointer: Optional[int] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Aggregate report
# ---------------------------------------------------------------------------

class ImageReport(BaseModel):
    """Complete inspection result for one OAT image.

    Attributes:
        path: Filesystem path the image was read from.
        container: Raw OAT blob or ELF-wrapped ``.oat``/``.odex``.
        base_address: Absolute address of the first image byte.
        size: Image size in bytes.
        header: Decoded header fields.
        key_value_store: Entries of the header's key-value store.
        dex_files: Dex-file records decoded before any failure.
        walk_error: Decode failure that stopped the directory walk.
    """
    path: str = ""
    container: ImageFormat = ImageFormat.RAW
    base_address: int = 0
    size: int = 0
    header: HeaderSummary = Field(default_factory=HeaderSummary)
    key_value_store: dict[str, str] = Field(default_factory=dict)
    dex_files: list[DexFileSummary] = Field(default_factory=list)
    walk_error: Optional[str] = None
