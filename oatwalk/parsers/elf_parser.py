"""
ELF Container Parser
=====================

Struct-based parser for the ELF shared objects that wrap OAT images on
disk (``boot.oat``, ``*.odex``, ``*.oat``).  ``dex2oat`` emits these as
ordinary ELF files whose dynamic symbol table exports:

    - ``oatdata``      -- first byte of the OAT image (the ``oat\\n`` header)
    - ``oatexec``      -- first byte of the compiled code
    - ``oatlastword``  -- last 4-byte word of the compiled code

The runtime maps the PT_LOAD segments and hands ``[oatdata,
oatlastword + 4)`` to the OAT reader.  :meth:`ELFParser.load_oat_image`
reproduces that mapping in a ``bytearray`` so the image can be navigated
exactly as the runtime sees it, at its link-time virtual addresses.

Both 32-bit (ELF32) and 64-bit (ELF64) variants are supported.

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - Android Open Source Project. art/compiler/elf_writer_quick.cc.
    - Linux man page: elf(5).
"""

from __future__ import annotations

import struct
from typing import Optional

from oatwalk.core.errors import OatLoadError
from oatwalk.core.models import InstructionSet


# ---------------------------------------------------------------------------
# ELF Constants
# ---------------------------------------------------------------------------

ELF_MAGIC: bytes = b"\x7fELF"

ELFCLASS32: int = 1
ELFCLASS64: int = 2

ELFDATA2LSB: int = 1  # Little-endian
ELFDATA2MSB: int = 2  # Big-endian

# Machine architectures that can carry OAT images
EM_386: int = 3
EM_MIPS: int = 8
EM_ARM: int = 40
EM_X86_64: int = 62
EM_AARCH64: int = 183

_EM_ISA: dict[int, InstructionSet] = {
    EM_386: InstructionSet.X86,
    EM_MIPS: InstructionSet.MIPS,
    EM_ARM: InstructionSet.THUMB2,
    EM_X86_64: InstructionSet.X86_64,
    EM_AARCH64: InstructionSet.ARM64,
}

# Section header types
SHT_SYMTAB: int = 2
SHT_DYNSYM: int = 11

# Program header types
PT_LOAD: int = 1

# Symbol tables hold at most this many bytes per symbol name we care about
_MAX_SYMBOL_NAME: int = 256


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _ELFHeader:
    """Parsed ELF header fields."""
    __slots__ = (
        "ei_class", "ei_data", "e_type", "e_machine", "e_entry",
        "e_phoff", "e_shoff", "e_phentsize", "e_phnum",
        "e_shentsize", "e_shnum", "e_shstrndx",
    )

    def __init__(self) -> None:
        self.ei_class: int = 0
        self.ei_data: int = 0
        self.e_type: int = 0
        self.e_machine: int = 0
        self.e_entry: int = 0
        self.e_phoff: int = 0
        self.e_shoff: int = 0
        self.e_phentsize: int = 0
        self.e_phnum: int = 0
        self.e_shentsize: int = 0
        self.e_shnum: int = 0
        self.e_shstrndx: int = 0


class _SectionHeader:
    """Parsed section header entry."""
    __slots__ = (
        "sh_name", "sh_type", "sh_flags", "sh_addr",
        "sh_offset", "sh_size", "sh_link", "sh_entsize",
    )

    def __init__(self) -> None:
        self.sh_name: int = 0
        self.sh_type: int = 0
        self.sh_flags: int = 0
        self.sh_addr: int = 0
        self.sh_offset: int = 0
        self.sh_size: int = 0
        self.sh_link: int = 0
        self.sh_entsize: int = 0


class _ProgramHeader:
    """Parsed program header (segment) entry."""
    __slots__ = ("p_type", "p_offset", "p_vaddr", "p_filesz", "p_memsz")

    def __init__(self) -> None:
        self.p_type: int = 0
        self.p_offset: int = 0
        self.p_vaddr: int = 0
        self.p_filesz: int = 0
        self.p_memsz: int = 0


class ElfSymbol:
    """A named symbol from ``.dynsym`` or ``.symtab``."""
    __slots__ = ("name", "value", "size")

    def __init__(self, name: str, value: int, size: int) -> None:
        self.name = name
        self.value = value
        self.size = size

    def __repr__(self) -> str:
        return f"ElfSymbol({self.name!r}, value={self.value:#x}, size={self.size})"


# ---------------------------------------------------------------------------
# ELF Parser
# ---------------------------------------------------------------------------

class ELFParser:
    """Struct-based ELF parser specialised for OAT containers.

    Usage::

        parser = ELFParser(raw_bytes)
        if parser.parse():
            image, base = parser.load_oat_image()
            oat = OatFile.from_buffer(image, base_address=base)
    """

    def __init__(self, data: bytes) -> None:
        """Initialise the parser with raw binary data.

        Args:
            data: Complete ELF file contents as bytes.
        """
        self._data: bytes = data
        self._header: _ELFHeader = _ELFHeader()
        self._sections: list[_SectionHeader] = []
        self._program_headers: list[_ProgramHeader] = []
        self._symbols: dict[str, ElfSymbol] = {}
        self._endian: str = "<"
        self._is_64bit: bool = False
        self._parsed: bool = False

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> bool:
        """Parse the ELF headers and symbol tables.

        Returns:
            ``True`` if parsing succeeded, ``False`` on invalid data.
        """
        if len(self._data) < 16:
            return False
        if self._data[:4] != ELF_MAGIC:
            return False

        try:
            self._parse_elf_header()
            self._parse_section_headers()
            self._parse_program_headers()
            self._parse_symbol_tables()
            self._parsed = True
            return True
        except (struct.error, IndexError, ValueError):
            return False

    @property
    def is_64bit(self) -> bool:
        return self._is_64bit

    @property
    def instruction_set(self) -> InstructionSet:
        """Instruction set implied by ``e_machine``."""
        isa = _EM_ISA.get(self._header.e_machine, InstructionSet.NONE)
        if isa is InstructionSet.MIPS and self._is_64bit:
            return InstructionSet.MIPS64
        return isa

    def get_symbol(self, name: str) -> Optional[ElfSymbol]:
        """Return the symbol called *name* (``.dynsym`` preferred)."""
        return self._symbols.get(name)

    def load_oat_image(
        self,
        start_symbol: str = "oatdata",
        last_word_symbol: str = "oatlastword",
        max_size: Optional[int] = None,
    ) -> tuple[bytearray, int]:
        """Materialise the OAT image as the runtime would map it.

        The image spans from *start_symbol* to the end of
        *last_word_symbol* (``value + max(size, 4)``).  Bytes are copied
        from every PT_LOAD segment overlapping that range; bytes a
        segment reserves in memory but not in the file stay zero.
        The span may not exceed the memory the PT_LOAD segments reserve,
        nor *max_size* when given.

        Returns:
            ``(image, base_vaddr)``.

        Raises:
            OatLoadError: Not parsed, the symbols are missing or
                inverted, or the span is larger than the image can be.
        """
        if not self._parsed:
            raise OatLoadError("ELF file has not been parsed")

        start = self.get_symbol(start_symbol)
        if start is None:
            raise OatLoadError(f"ELF file does not export {start_symbol!r}")
        last = self.get_symbol(last_word_symbol)
        if last is None:
            raise OatLoadError(f"ELF file does not export {last_word_symbol!r}")

        base = start.value
        end = last.value + max(last.size, 4)
        if end <= base:
            raise OatLoadError(
                f"{last_word_symbol} ({end:#x}) does not follow {start_symbol} ({base:#x})"
            )

        span = end - base
        reserved = sum(ph.p_memsz for ph in self._program_headers if ph.p_type == PT_LOAD)
        if span > reserved:
            raise OatLoadError(
                f"OAT span of {span:,} bytes exceeds the {reserved:,} bytes of PT_LOAD memory"
            )
        if max_size is not None and span > max_size:
            raise OatLoadError(
                f"OAT span of {span:,} bytes exceeds the limit of {max_size:,} bytes"
            )

        image = bytearray(span)
        for ph in self._program_headers:
            if ph.p_type != PT_LOAD:
                continue
            lo = max(base, ph.p_vaddr)
            hi = min(end, ph.p_vaddr + ph.p_filesz)
            if lo >= hi:
                continue
            file_start = ph.p_offset + (lo - ph.p_vaddr)
            chunk = self._data[file_start:file_start + (hi - lo)]
            image[lo - base:lo - base + len(chunk)] = chunk
        return image, base

    # ------------------------------------------------------------------ #
    #  ELF header parsing
    # ------------------------------------------------------------------ #

    def _parse_elf_header(self) -> None:
        """Parse the ELF identification and file header."""
        h = self._header
        h.ei_class = self._data[4]
        h.ei_data = self._data[5]

        self._is_64bit = h.ei_class == ELFCLASS64
        self._endian = "<" if h.ei_data == ELFDATA2LSB else ">"

        if self._is_64bit:
            fmt = f"{self._endian}HHIQQQIHHHHHH"
        else:
            fmt = f"{self._endian}HHIIIIIHHHHHH"
        (
            h.e_type, h.e_machine, _e_version, h.e_entry,
            h.e_phoff, h.e_shoff, _e_flags, _e_ehsize,
            h.e_phentsize, h.e_phnum, h.e_shentsize, h.e_shnum,
            h.e_shstrndx,
        ) = struct.unpack_from(fmt, self._data, 16)

    # ------------------------------------------------------------------ #
    #  Section header parsing
    # ------------------------------------------------------------------ #

    def _parse_section_headers(self) -> None:
        """Parse all section headers from the section header table."""
        h = self._header
        if h.e_shoff == 0 or h.e_shnum == 0:
            return

        if self._is_64bit:
            fmt = f"{self._endian}IIQQQQIIQQ"   # Elf64_Shdr: 64 bytes
        else:
            fmt = f"{self._endian}IIIIIIIIII"   # Elf32_Shdr: 40 bytes
        size = struct.calcsize(fmt)

        for i in range(h.e_shnum):
            offset = h.e_shoff + i * h.e_shentsize
            if offset + size > len(self._data):
                break
            sh = _SectionHeader()
            (
                sh.sh_name, sh.sh_type, sh.sh_flags, sh.sh_addr,
                sh.sh_offset, sh.sh_size, sh.sh_link, _sh_info,
                _sh_addralign, sh.sh_entsize,
            ) = struct.unpack_from(fmt, self._data, offset)
            self._sections.append(sh)

    # ------------------------------------------------------------------ #
    #  Program header parsing
    # ------------------------------------------------------------------ #

    def _parse_program_headers(self) -> None:
        """Parse all program headers (segments)."""
        h = self._header
        if h.e_phoff == 0 or h.e_phnum == 0:
            return

        for i in range(h.e_phnum):
            offset = h.e_phoff + i * h.e_phentsize
            ph = _ProgramHeader()

            if self._is_64bit:
                # Elf64_Phdr: 56 bytes
                fmt = f"{self._endian}IIQQQQQQ"
                if offset + struct.calcsize(fmt) > len(self._data):
                    break
                (
                    ph.p_type, _p_flags, ph.p_offset, ph.p_vaddr,
                    _p_paddr, ph.p_filesz, ph.p_memsz, _p_align,
                ) = struct.unpack_from(fmt, self._data, offset)
            else:
                # Elf32_Phdr: 32 bytes
                fmt = f"{self._endian}IIIIIIII"
                if offset + struct.calcsize(fmt) > len(self._data):
                    break
                (
                    ph.p_type, ph.p_offset, ph.p_vaddr, _p_paddr,
                    ph.p_filesz, ph.p_memsz, _p_flags, _p_align,
                ) = struct.unpack_from(fmt, self._data, offset)

            self._program_headers.append(ph)

    # ------------------------------------------------------------------ #
    #  Symbol table parsing
    # ------------------------------------------------------------------ #

    def _parse_symbol_tables(self) -> None:
        """Parse ``.dynsym`` then ``.symtab``; the first definition wins."""
        for wanted in (SHT_DYNSYM, SHT_SYMTAB):
            for sh in self._sections:
                if sh.sh_type == wanted:
                    for sym in self._parse_symbol_table(sh):
                        self._symbols.setdefault(sym.name, sym)

    def _parse_symbol_table(self, sh: _SectionHeader) -> list[ElfSymbol]:
        """Parse a single symbol table section."""
        if sh.sh_entsize == 0:
            return []

        strtab_data = b""
        if sh.sh_link < len(self._sections):
            strtab_sh = self._sections[sh.sh_link]
            st_start = strtab_sh.sh_offset
            st_end = st_start + strtab_sh.sh_size
            if st_end <= len(self._data):
                strtab_data = self._data[st_start:st_end]
        if not strtab_data:
            return []

        symbols: list[ElfSymbol] = []
        for i in range(sh.sh_size // sh.sh_entsize):
            offset = sh.sh_offset + i * sh.sh_entsize

            if self._is_64bit:
                # Elf64_Sym: 24 bytes
                fmt = f"{self._endian}IBBHQQ"
                if offset + struct.calcsize(fmt) > len(self._data):
                    break
                st_name, _info, _other, _shndx, st_value, st_size = struct.unpack_from(
                    fmt, self._data, offset
                )
            else:
                # Elf32_Sym: 16 bytes
                fmt = f"{self._endian}IIIBBH"
                if offset + struct.calcsize(fmt) > len(self._data):
                    break
                st_name, st_value, st_size, _info, _other, _shndx = struct.unpack_from(
                    fmt, self._data, offset
                )

            name = self._read_cstring(strtab_data, st_name)
            if name:
                symbols.append(ElfSymbol(name, st_value, st_size))

        return symbols

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    @staticmethod
    def _read_cstring(data: bytes, offset: int) -> str:
        """Read a null-terminated C string from a byte buffer."""
        if offset < 0 or offset >= len(data):
            return ""
        end = data.find(b"\x00", offset, offset + _MAX_SYMBOL_NAME)
        if end == -1:
            end = min(len(data), offset + _MAX_SYMBOL_NAME)
        return data[offset:end].decode("ascii", errors="replace")
