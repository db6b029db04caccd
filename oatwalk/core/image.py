"""
OAT Image Context
==================

:class:`OatFile` holds the mapped byte range of one OAT image, its
header, and the start addresses of the two variable-length regions
behind the header (the key-value store and the dex-file record stream).

The caller owns the buffer.  ``OatFile`` and every record derived from
it keep plain references into that buffer and never copy or mutate it,
so concurrent read-only use of one ``OatFile`` is safe.

Setup is record-keeping only: it does not validate the header signature
(see :meth:`OatFile.is_valid_header`) and does not check that the
header's region sizes fit the mapping.  A corrupt size surfaces as an
:class:`~oatwalk.core.errors.OatDecodeError` the first time a decoder
reads through it.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator, Optional, Union

from shared.logger import ArtScopeLogger, quiet_logger

from oatwalk.core import classes, directory, methods
from oatwalk.core.arch import (
    InstructionPointerTransform,
    instruction_set_from_code,
    select_transform,
)
from oatwalk.core.errors import OatSetupError
from oatwalk.core.memory import MappedRegion
from oatwalk.core.models import InstructionSet
from oatwalk.parsers.dex_parser import DexCapability, DexFile
from oatwalk.parsers.oat_header import (
    OatHeader,
    get_store_value,
    is_valid_header,
    read_key_value_store,
)


DexFactory = Callable[[MappedRegion, int], DexCapability]


class OatFile:
    """Immutable context for one mapped OAT image.

    Build instances with :meth:`setup` or :meth:`from_buffer`.

    Attributes:
        begin: Absolute address of the first image byte (the header).
        end: Absolute address one past the last image byte.
        header: Decoded fixed header.
        key_value_store_start: ``begin + header_size``.
        dex_file_stream_start: ``key_value_store_start + key_value_store_size``.
        instruction_set: ISA used to select the code-pointer transform.
    """

    def __init__(
        self,
        region: MappedRegion,
        header: OatHeader,
        *,
        instruction_set: Optional[InstructionSet] = None,
        dex_factory: DexFactory = DexFile,
        logger: Optional[ArtScopeLogger] = None,
    ) -> None:
        self._region = region
        self._header = header
        self._key_value_store_start = region.begin + header.header_size
        self._dex_file_stream_start = self._key_value_store_start + header.key_value_store_size
        self._instruction_set = (
            instruction_set
            if instruction_set is not None
            else instruction_set_from_code(header.instruction_set)
        )
        self._transform: InstructionPointerTransform = select_transform(self._instruction_set)
        self._dex_factory = dex_factory
        self._logger = logger or quiet_logger("oatwalk.core")

    # ------------------------------------------------------------------ #
    #  Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def setup(
        cls,
        begin: Optional[int],
        end: Optional[int],
        memory: Any,
        *,
        instruction_set: Optional[InstructionSet] = None,
        dex_factory: DexFactory = DexFile,
        logger: Optional[ArtScopeLogger] = None,
    ) -> OatFile:
        """Create the context for the image occupying ``[begin, end)``.

        Args:
            begin: Absolute address of ``memory[0]``.
            end: Absolute address one past the last image byte.
            memory: Bytes-like object holding at least ``end - begin`` bytes.
            instruction_set: Override for the header's instruction set.
            dex_factory: Builds the DEX parser for an embedded module.
            logger: Receives decode-failure diagnostics.

        Raises:
            OatSetupError: ``begin``/``end``/``memory`` is ``None``,
                ``end <= begin``, or ``memory`` is too short.
            OatDecodeError: The range is shorter than the fixed header.
        """
        if begin is None or end is None:
            raise OatSetupError("image begin and end must not be null")
        if end <= begin:
            raise OatSetupError(f"image end {end:#x} is not above begin {begin:#x}")
        if memory is None:
            raise OatSetupError("image memory must not be null")
        size = memoryview(memory).nbytes
        if size < end - begin:
            raise OatSetupError(
                f"image memory holds {size} bytes, range needs {end - begin}"
            )

        region = MappedRegion(memory, begin, end)
        header = OatHeader.parse(region, begin)
        return cls(
            region,
            header,
            instruction_set=instruction_set,
            dex_factory=dex_factory,
            logger=logger,
        )

    @classmethod
    def from_buffer(
        cls,
        memory: Any,
        base_address: int = 0,
        **kwargs: Any,
    ) -> OatFile:
        """Create the context for a whole buffer loaded at *base_address*."""
        size = memoryview(memory).nbytes if memory is not None else 0
        return cls.setup(base_address, base_address + size, memory, **kwargs)

    @staticmethod
    def is_valid_header(data: Union[bytes, bytearray, memoryview]) -> bool:
        """Return ``True`` if *data* starts with a supported OAT signature."""
        return is_valid_header(data)

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def begin(self) -> int:
        return self._region.begin

    @property
    def end(self) -> int:
        return self._region.end

    @property
    def size(self) -> int:
        return self._region.size

    @property
    def region(self) -> MappedRegion:
        return self._region

    @property
    def header(self) -> OatHeader:
        return self._header

    @property
    def key_value_store_start(self) -> int:
        return self._key_value_store_start

    @property
    def dex_file_stream_start(self) -> int:
        return self._dex_file_stream_start

    @property
    def instruction_set(self) -> InstructionSet:
        return self._instruction_set

    @property
    def dex_factory(self) -> DexFactory:
        return self._dex_factory

    @property
    def logger(self) -> ArtScopeLogger:
        return self._logger

    @property
    def code_pointer_transform(self) -> InstructionPointerTransform:
        return self._transform

    # ------------------------------------------------------------------ #
    #  Offset resolver
    # ------------------------------------------------------------------ #

    def pointer_from_file_offset(self, offset: int) -> Optional[int]:
        """Translate a file-relative offset into an absolute address.

        Offset ``0`` would point at the header itself, which no field
        legitimately does; it means "absent" and yields ``None``.  No
        bounds check is made; the reader of the address does that.
        """
        if offset == 0:
            return None
        return self._region.begin + offset

    # ------------------------------------------------------------------ #
    #  Key-value store
    # ------------------------------------------------------------------ #

    def key_value_store(self) -> dict[str, str]:
        """Decode all ``key -> value`` pairs of the header's store."""
        return read_key_value_store(
            self._region, self._key_value_store_start, self._header.key_value_store_size
        )

    def get_store_value(self, key: str) -> Optional[str]:
        return get_store_value(
            self._region, self._key_value_store_start,
            self._header.key_value_store_size, key,
        )

    # ------------------------------------------------------------------ #
    #  Directory, class and method lookups
    # ------------------------------------------------------------------ #

    def iter_dex_files(self) -> Iterator[directory.OatDexFile]:
        return directory.iter_dex_files(self)

    def get_oat_dex_file(self, index: int) -> directory.OatDexFile:
        return directory.get_oat_dex_file(self, index)

    def find_dex_file(self, location: Union[str, bytes]) -> Optional[directory.OatDexFile]:
        return directory.find_dex_file(self, location)

    def find_class(
        self, descriptor: str
    ) -> Optional[tuple[directory.OatDexFile, classes.OatClass]]:
        return classes.find_class(self, descriptor)

    def find_method(
        self, descriptor: str, name: str, signature: str
    ) -> Optional[methods.OatMethod]:
        """Resolve ``descriptor -> name + signature`` across all dex files.

        Returns ``None`` when the class or the method does not exist.
        """
        found = self.find_class(descriptor)
        if found is None:
            return None
        _oat_dex_file, oat_class = found
        return methods.find_method(oat_class, name, signature)

    def __repr__(self) -> str:
        return (
            f"OatFile(begin={self.begin:#x}, end={self.end:#x}, "
            f"version={self._header.version_string!r}, "
            f"dex_file_count={self._header.dex_file_count})"
        )
