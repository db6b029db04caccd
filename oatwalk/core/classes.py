"""
Class Resolver
===============

Maps a class from an embedded DEX module to this image's class record.

The DEX module decides which class matches (and at which class_def
index); that index, never the descriptor, selects the entry in the
dex-file record's class offset table.  The offset is resolved against
the image start and the class record there is decoded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from oatwalk.core.directory import OatDexFile, get_oat_dex_file
from oatwalk.core.errors import OatDecodeError
from oatwalk.parsers.dex_parser import DexClass
from oatwalk.parsers.oat_class import OatClassData, decode_oat_class

if TYPE_CHECKING:
    from oatwalk.core.image import OatFile


class OatClass:
    """A class resolved inside one dex-file record.

    Attributes:
        oat_dex_file: Owning dex-file record (back-reference).
        class_def_index: Index in the DEX module's class_defs table.
        dex_class: Class definition from the DEX parser.
        oat_class_data: Decoded class record from the image.
    """
    __slots__ = ("oat_dex_file", "class_def_index", "dex_class", "oat_class_data")

    def __init__(
        self,
        oat_dex_file: OatDexFile,
        class_def_index: int,
        dex_class: DexClass,
        oat_class_data: OatClassData,
    ) -> None:
        self.oat_dex_file = oat_dex_file
        self.class_def_index = class_def_index
        self.dex_class = dex_class
        self.oat_class_data = oat_class_data

    @property
    def oat_file(self) -> OatFile:
        return self.oat_dex_file.oat_file

    @property
    def descriptor(self) -> str:
        return self.dex_class.descriptor

    def __repr__(self) -> str:
        return (
            f"OatClass({self.descriptor!r}, class_def_index={self.class_def_index}, "
            f"type={self.oat_class_data.type.name})"
        )


def _decode_class_record(
    oat_dex_file: OatDexFile,
    class_def_index: int,
    dex_class: DexClass,
    descriptor: Optional[str],
) -> OatClass:
    oat_file = oat_dex_file.oat_file
    offsets = oat_dex_file.data.class_definition_offsets
    try:
        if class_def_index >= len(offsets):
            raise OatDecodeError(
                f"class_def index beyond class offset table ({len(offsets)} entries)"
            )
        address = oat_file.pointer_from_file_offset(offsets[class_def_index])
        data = decode_oat_class(oat_file.region, address)
    except OatDecodeError as exc:
        if descriptor is not None:
            oat_file.logger.error(
                "Error decoding OatClassData %s at index %d in OatDexFile %s.",
                descriptor, class_def_index, oat_dex_file.location,
                index=class_def_index, location=oat_dex_file.location, descriptor=descriptor,
            )
        else:
            oat_file.logger.error(
                "Error decoding OatClassData at index %d in OatDexFile %s.",
                class_def_index, oat_dex_file.location,
                index=class_def_index, location=oat_dex_file.location,
            )
        raise exc.with_context(
            index=class_def_index,
            location=oat_dex_file.location,
            descriptor=descriptor,
        ) from exc
    return OatClass(oat_dex_file, class_def_index, dex_class, data)


def find_class_in_dex(oat_dex_file: OatDexFile, descriptor: str) -> Optional[OatClass]:
    """Resolve *descriptor* inside one dex-file record.

    Returns:
        The class, or ``None`` when the DEX module defines no such class.

    Raises:
        OatDecodeError: The class record could not be decoded.
    """
    try:
        found = oat_dex_file.dex.locate_class_by_descriptor(descriptor)
    except OatDecodeError as exc:
        raise exc.with_context(location=oat_dex_file.location, descriptor=descriptor) from exc
    if found is None:
        return None
    dex_class, class_def_index = found
    return _decode_class_record(oat_dex_file, class_def_index, dex_class, descriptor)


def get_class(oat_dex_file: OatDexFile, class_def_index: int) -> OatClass:
    """Resolve the class at *class_def_index* inside one dex-file record.

    Range checking is done by the DEX parser.

    Raises:
        OatDecodeError: Index out of range or the class record could not
            be decoded.
    """
    try:
        dex_class = oat_dex_file.dex.get_class_by_def_index(class_def_index)
    except OatDecodeError as exc:
        raise exc.with_context(index=class_def_index, location=oat_dex_file.location) from exc
    return _decode_class_record(oat_dex_file, class_def_index, dex_class, None)


def find_class(oat_file: OatFile, descriptor: str) -> Optional[tuple[OatDexFile, OatClass]]:
    """Search every dex-file record, in index order, for *descriptor*.

    Returns:
        ``(oat_dex_file, oat_class)`` for the first record defining the
        class, or ``None``.

    Raises:
        OatDecodeError: Propagated from the first record that fails to
            decode; later records are not tried.
    """
    for index in range(oat_file.header.dex_file_count):
        oat_dex_file = get_oat_dex_file(oat_file, index)
        oat_class = find_class_in_dex(oat_dex_file, descriptor)
        if oat_class is not None:
            return oat_dex_file, oat_class
    return None
