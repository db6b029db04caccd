"""
Oatwalk Inspection Engine
==========================

Loads an OAT image from disk and drives the navigation core to produce
serialisable reports for the CLI.

Pipeline:
    1. Read the file (bounded by ``max_file_size``)
    2. Detect the container: ELF shared object or raw ``oat\\n`` blob
    3. Materialise the image and its base address
    4. Set up the :class:`~oatwalk.core.image.OatFile` context
    5. Summarise the header and key-value store
    6. Walk the dex-file directory, or resolve a single method

Failures inside the image are reported, not raised: a decode error ends
the directory walk and is recorded in :attr:`ImageReport.walk_error`, and
a method lookup returns a :class:`MethodLookup` with status ``failure``.
Only problems loading the file itself raise :class:`OatLoadError`.

References:
    - Android Open Source Project. art/runtime/oat_file.cc
      (``OatFile::Open``, ``ElfOatFile::Load``).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

from shared.config import ArtScopeConfig
from shared.logger import ArtScopeLogger

from oatwalk.core.arch import parse_instruction_set
from oatwalk.core.classes import OatClass, find_class_in_dex
from oatwalk.core.errors import OatDecodeError, OatError, OatLoadError, OatSetupError
from oatwalk.core.image import OatFile
from oatwalk.core.methods import (
    find_method,
    get_quick_compiled_entry_point,
    get_quick_compiled_memory_pointer,
)
from oatwalk.core.models import (
    DexFileSummary,
    HeaderSummary,
    ImageFormat,
    ImageReport,
    InstructionSet,
    LookupStatus,
    MethodLookup,
)
from oatwalk.parsers.elf_parser import ELF_MAGIC, ELFParser

_T = TypeVar("_T")


# ---------------------------------------------------------------------------
# OatwalkEngine
# ---------------------------------------------------------------------------

class OatwalkEngine:
    """Loads OAT images and runs inspections over them.

    Usage::

        engine = OatwalkEngine()
        report = await engine.inspect("/system/framework/arm/boot.oat")
        print(report.header.version, len(report.dex_files))

    Or synchronously::

        lookup = engine.lookup_sync(
            "base.odex", "Lcom/example/Main;", "onCreate", "(Landroid/os/Bundle;)V"
        )
    """

    def __init__(
        self,
        config: ArtScopeConfig | None = None,
        logger: ArtScopeLogger | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            config: ArtScope configuration.  Defaults are used if not provided.
            logger: Logger instance, also handed to every ``OatFile`` the
                engine creates.  A new one is created if not provided.
        """
        self._config: ArtScopeConfig = config or ArtScopeConfig()
        self._logger: ArtScopeLogger = logger or ArtScopeLogger("oatwalk.engine")
        self._instruction_set: Optional[InstructionSet] = parse_instruction_set(
            self._config.oatwalk.instruction_set
        )

    # ------------------------------------------------------------------ #
    #  Async entry points
    # ------------------------------------------------------------------ #

    async def inspect(self, file_path: str) -> ImageReport:
        """Load *file_path* and summarise header, store and dex files.

        Raises:
            OatLoadError: The file cannot be read or set up as an image.
        """
        return await asyncio.get_event_loop().run_in_executor(
            None, self._inspect_file, file_path
        )

    async def lookup(
        self,
        file_path: str,
        descriptor: str,
        name: str,
        signature: str,
        dex_location: Optional[str] = None,
    ) -> MethodLookup:
        """Load *file_path* and resolve one method to its compiled code.

        Raises:
            OatLoadError: The file cannot be read or set up as an image.
        """
        return await asyncio.get_event_loop().run_in_executor(
            None, self._lookup_file, file_path, descriptor, name, signature, dex_location
        )

    def inspect_sync(self, file_path: str) -> ImageReport:
        """Synchronous wrapper around :meth:`inspect`."""
        return self._run_sync(self.inspect(file_path))

    def lookup_sync(
        self,
        file_path: str,
        descriptor: str,
        name: str,
        signature: str,
        dex_location: Optional[str] = None,
    ) -> MethodLookup:
        """Synchronous wrapper around :meth:`lookup`."""
        return self._run_sync(
            self.lookup(file_path, descriptor, name, signature, dex_location)
        )

    @staticmethod
    def _run_sync(coro: Coroutine[Any, Any, _T]) -> _T:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            # Already in an async context; run on a fresh loop in a worker thread
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor() as pool:
                return pool.submit(asyncio.run, coro).result()
        return asyncio.run(coro)

    # ------------------------------------------------------------------ #
    #  Loading
    # ------------------------------------------------------------------ #

    def load_image(self, file_path: str) -> tuple[OatFile, ImageFormat]:
        """Read *file_path* and set up the image it contains.

        Raises:
            OatLoadError: Missing, oversized, or unusable file.
        """
        path = Path(file_path)
        if not path.is_file():
            raise OatLoadError(f"File not found: {file_path}")

        file_size = path.stat().st_size
        max_size = self._config.oatwalk.max_file_size
        if file_size > max_size:
            raise OatLoadError(
                f"File too large: {file_size:,} bytes (max: {max_size:,} bytes)"
            )

        self._logger.info(f"Loading {path} ({file_size:,} bytes)")
        return self.open_data(path.read_bytes())

    def open_data(self, data: bytes) -> tuple[OatFile, ImageFormat]:
        """Set up the image held in *data* (ELF container or raw blob)."""
        settings = self._config.oatwalk
        instruction_set = self._instruction_set

        if data[:4] == ELF_MAGIC:
            container = ImageFormat.ELF
            parser = ELFParser(data)
            if not parser.parse():
                raise OatLoadError("Malformed ELF container")
            image, oatdata = parser.load_oat_image(
                settings.oatdata_symbol,
                settings.oatlastword_symbol,
                max_size=settings.max_file_size,
            )
            base_address = settings.base_address or oatdata
            self._logger.debug(
                "ELF container: %s=%#x, image %d bytes, machine %s",
                settings.oatdata_symbol, oatdata, len(image),
                parser.instruction_set.value,
            )
            elf_isa = parser.instruction_set
        else:
            container = ImageFormat.RAW
            image = data
            base_address = settings.base_address
            elf_isa = InstructionSet.NONE

        try:
            oat_file = OatFile.from_buffer(
                image,
                base_address=base_address,
                instruction_set=instruction_set,
                logger=self._logger,
            )
        except (OatSetupError, OatDecodeError) as exc:
            raise OatLoadError(f"Cannot set up OAT image: {exc}") from exc

        if instruction_set is None and oat_file.instruction_set is InstructionSet.NONE \
                and elf_isa is not InstructionSet.NONE:
            # Header names no ISA; fall back to the ELF machine
            oat_file = OatFile(
                oat_file.region, oat_file.header,
                instruction_set=elf_isa, logger=self._logger,
            )
        return oat_file, container

    # ------------------------------------------------------------------ #
    #  Reports
    # ------------------------------------------------------------------ #

    def _inspect_file(self, file_path: str) -> ImageReport:
        oat_file, container = self.load_image(file_path)
        with self._logger.timed(f"inspect {file_path}"):
            report = self.build_report(oat_file, container)
        report.path = str(Path(file_path).resolve())
        self._logger.info(
            f"Inspection complete: OAT {report.header.version} | "
            f"{report.header.instruction_set.value} | "
            f"dex files: {len(report.dex_files)}/{report.header.dex_file_count}"
        )
        return report

    def build_report(
        self, oat_file: OatFile, container: ImageFormat = ImageFormat.RAW
    ) -> ImageReport:
        """Summarise *oat_file*; decode failures are recorded, not raised."""
        report = ImageReport(
            container=container,
            base_address=oat_file.begin,
            size=oat_file.size,
            header=self.summarize_header(oat_file),
        )

        if not report.header.valid:
            report.walk_error = (
                f"Invalid OAT header (magic={oat_file.header.magic!r}, "
                f"version={oat_file.header.version!r})"
            )
            self._logger.warning(report.walk_error)
            return report

        try:
            report.key_value_store = oat_file.key_value_store()
        except OatDecodeError as exc:
            self._logger.warning(f"Key-value store unreadable: {exc}")

        try:
            for oat_dex_file in oat_file.iter_dex_files():
                data = oat_dex_file.data
                report.dex_files.append(
                    DexFileSummary(
                        index=oat_dex_file.index,
                        location=oat_dex_file.location,
                        location_checksum=data.location_checksum,
                        dex_file_offset=data.dex_file_offset,
                        class_def_count=len(data.class_definition_offsets),
                        record_size=data.record_size,
                    )
                )
        except OatDecodeError as exc:
            report.walk_error = str(exc)
        return report

    @staticmethod
    def summarize_header(oat_file: OatFile) -> HeaderSummary:
        header = oat_file.header
        return HeaderSummary(
            version=header.version_string,
            valid=header.is_valid,
            adler32_checksum=header.adler32_checksum,
            instruction_set=oat_file.instruction_set,
            instruction_set_features=header.instruction_set_features_bitmap,
            dex_file_count=header.dex_file_count,
            executable_offset=header.executable_offset,
            image_patch_delta=header.image_patch_delta,
            key_value_store_size=header.key_value_store_size,
            header_size=header.header_size,
            trampolines=dict(header.trampolines),
        )

    # ------------------------------------------------------------------ #
    #  Method lookup
    # ------------------------------------------------------------------ #

    def _lookup_file(
        self,
        file_path: str,
        descriptor: str,
        name: str,
        signature: str,
        dex_location: Optional[str],
    ) -> MethodLookup:
        oat_file, _container = self.load_image(file_path)
        return self.resolve_method(oat_file, descriptor, name, signature, dex_location)

    def resolve_method(
        self,
        oat_file: OatFile,
        descriptor: str,
        name: str,
        signature: str,
        dex_location: Optional[str] = None,
    ) -> MethodLookup:
        """Resolve ``descriptor -> name + signature`` to compiled code.

        When *dex_location* is given only that dex file is searched.
        """
        lookup = MethodLookup(
            class_descriptor=descriptor, method_name=name, signature=signature
        )

        if not oat_file.header.is_valid:
            lookup.status = LookupStatus.FAILURE
            lookup.error = "Invalid OAT header"
            return lookup

        with self._logger.operation("find_method"):
            try:
                oat_class = self._resolve_class(oat_file, descriptor, dex_location)
                if oat_class is None:
                    self._logger.debug(f"Class {descriptor} not found")
                    return lookup
                lookup.dex_location = oat_class.oat_dex_file.location
                lookup.class_def_index = oat_class.class_def_index
                lookup.class_status = oat_class.oat_class_data.status
                lookup.class_type = oat_class.oat_class_data.type.name.lower()

                method = find_method(oat_class, name, signature)
            except OatError as exc:
                lookup.status = LookupStatus.FAILURE
                lookup.error = str(exc)
                return lookup

        if method is None:
            return lookup

        lookup.status = LookupStatus.FOUND
        lookup.method_kind = method.kind
        lookup.class_method_index = method.dex_method.class_method_index
        lookup.access_flags = method.dex_method.access_flags
        lookup.modifiers = method.dex_method.modifiers
        if method.oat_method_offsets is not None:
            lookup.compiled = True
            lookup.code_offset = method.oat_method_offsets.code_offset
            lookup.entry_point = get_quick_compiled_entry_point(method)
            lookup.code_pointer = get_quick_compiled_memory_pointer(method)
        return lookup

    @staticmethod
    def _resolve_class(
        oat_file: OatFile, descriptor: str, dex_location: Optional[str]
    ) -> Optional[OatClass]:
        if dex_location is None:
            found = oat_file.find_class(descriptor)
            return found[1] if found is not None else None
        oat_dex_file = oat_file.find_dex_file(dex_location)
        if oat_dex_file is None:
            return None
        return find_class_in_dex(oat_dex_file, descriptor)
