"""
Method Resolver and Code Locator
=================================

Finds a method in a resolved class and locates its compiled code.

A found method without a compiled-code record is an ordinary result: the
runtime interprets its bytecode.  ``find_*`` return ``None`` only when
the class declares no method with that name and signature.

References:
    - Android Open Source Project. art/runtime/oat_file.h
      (``OatMethod::GetQuickCode``).
    - Android Open Source Project. art/runtime/entrypoints/entrypoint_utils.h
      (``EntryPointToCodePointer``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from oatwalk.core.classes import OatClass
from oatwalk.core.errors import OatDecodeError
from oatwalk.parsers.dex_parser import DexMethod
from oatwalk.parsers.oat_class import OatMethodOffsets, get_oat_method_offsets

if TYPE_CHECKING:
    from oatwalk.core.image import OatFile


class OatMethod:
    """A method resolved inside an :class:`OatClass`.

    Attributes:
        oat_class: Owning class (back-reference).
        dex_method: Method from the DEX parser.
        oat_method_offsets: Compiled-code record, ``None`` when the method
            was not compiled ahead of time.
    """
    __slots__ = ("oat_class", "dex_method", "oat_method_offsets")

    def __init__(
        self,
        oat_class: OatClass,
        dex_method: DexMethod,
        oat_method_offsets: Optional[OatMethodOffsets],
    ) -> None:
        self.oat_class = oat_class
        self.dex_method = dex_method
        self.oat_method_offsets = oat_method_offsets

    @property
    def oat_file(self) -> OatFile:
        return self.oat_class.oat_dex_file.oat_file

    @property
    def kind(self) -> str:
        return "direct" if self.dex_method.is_direct else "virtual"

    def has_quick_compiled_code(self) -> bool:
        return has_quick_compiled_code(self)

    def get_quick_compiled_entry_point(self) -> Optional[int]:
        return get_quick_compiled_entry_point(self)

    def get_quick_compiled_memory_pointer(self) -> Optional[int]:
        return get_quick_compiled_memory_pointer(self)

    def __repr__(self) -> str:
        state = "compiled" if self.oat_method_offsets is not None else "interpreted"
        return f"OatMethod({self.dex_method.name}{self.dex_method.signature}, {self.kind}, {state})"


# ---------------------------------------------------------------------------
# Method resolver
# ---------------------------------------------------------------------------

def _bind(oat_class: OatClass, dex_method: DexMethod) -> OatMethod:
    oat_file = oat_class.oat_file
    try:
        offsets = get_oat_method_offsets(
            oat_file.region, oat_class.oat_class_data, dex_method.class_method_index
        )
    except OatDecodeError as exc:
        oat_file.logger.error(
            "Error reading OatMethodOffsets #%d of %s in OatDexFile %s.",
            dex_method.class_method_index, oat_class.descriptor,
            oat_class.oat_dex_file.location,
            index=dex_method.class_method_index,
            location=oat_class.oat_dex_file.location,
            descriptor=oat_class.descriptor,
        )
        raise exc.with_context(
            index=dex_method.class_method_index,
            location=oat_class.oat_dex_file.location,
            descriptor=oat_class.descriptor,
        ) from exc
    return OatMethod(oat_class, dex_method, offsets)


def find_direct_method(
    oat_class: OatClass, name: str, signature: str
) -> Optional[OatMethod]:
    """Find a direct method by exact name and signature."""
    logger = oat_class.oat_file.logger
    logger.debug("Looking up direct oat method %s %s", name, signature)
    dex_method = oat_class.oat_dex_file.dex.find_direct_method(
        oat_class.dex_class, name, signature
    )
    if dex_method is None:
        logger.debug("Could not find direct oat method %s %s", name, signature)
        return None
    return _bind(oat_class, dex_method)


def find_virtual_method(
    oat_class: OatClass, name: str, signature: str
) -> Optional[OatMethod]:
    """Find a virtual method by exact name and signature."""
    logger = oat_class.oat_file.logger
    logger.debug("Looking up virtual oat method %s %s", name, signature)
    dex_method = oat_class.oat_dex_file.dex.find_virtual_method(
        oat_class.dex_class, name, signature
    )
    if dex_method is None:
        logger.debug("Could not find virtual oat method %s %s", name, signature)
        return None
    return _bind(oat_class, dex_method)


def find_method(oat_class: OatClass, name: str, signature: str) -> Optional[OatMethod]:
    """Find a method among direct methods, then virtual methods."""
    method = find_direct_method(oat_class, name, signature)
    if method is None:
        method = find_virtual_method(oat_class, name, signature)
    if method is None:
        oat_class.oat_file.logger.debug("Could not find method %s %s", name, signature)
    return method


# ---------------------------------------------------------------------------
# Code locator
# ---------------------------------------------------------------------------

def has_quick_compiled_code(method: OatMethod) -> bool:
    return method.oat_method_offsets is not None


def get_quick_compiled_entry_point(method: OatMethod) -> Optional[int]:
    """Absolute entry point: image begin + the record's code offset."""
    if method.oat_method_offsets is None:
        return None
    return method.oat_file.begin + method.oat_method_offsets.code_offset


def get_quick_compiled_memory_pointer(method: OatMethod) -> Optional[int]:
    """Entry point with instruction-set tagging removed (e.g. Thumb bit)."""
    entry_point = get_quick_compiled_entry_point(method)
    if entry_point is None:
        return None
    return method.oat_file.code_pointer_transform(entry_point)
