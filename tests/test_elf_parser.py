"""Tests for the ELF container loader."""

from __future__ import annotations

import pytest

from oatwalk.core.errors import OatLoadError
from oatwalk.core.image import OatFile
from oatwalk.core.models import InstructionSet
from oatwalk.parsers.elf_parser import ELFParser
from tests.builders import EM_ARM, build_elf, sample_builder


@pytest.fixture
def image() -> bytes:
    return bytes(sample_builder().build().data)


class TestParse:

    def test_not_elf(self, image: bytes) -> None:
        assert not ELFParser(image).parse()
        assert not ELFParser(b"").parse()

    def test_symbols(self, image: bytes) -> None:
        parser = ELFParser(build_elf(image, vaddr=0x2000))
        assert parser.parse()
        assert parser.is_64bit
        oatdata = parser.get_symbol("oatdata")
        assert oatdata.value == 0x2000
        assert oatdata.size == len(image)
        assert parser.get_symbol("oatexec") is None

    def test_machine(self, image: bytes) -> None:
        parser = ELFParser(build_elf(image, bits=32, machine=EM_ARM))
        assert parser.parse()
        assert not parser.is_64bit
        assert parser.instruction_set is InstructionSet.THUMB2


class TestLoadOatImage:

    @pytest.mark.parametrize("bits", [32, 64])
    def test_materialises_image(self, image: bytes, bits: int) -> None:
        parser = ELFParser(build_elf(image, bits=bits, vaddr=0x3000))
        assert parser.parse()
        loaded, base = parser.load_oat_image()
        assert base == 0x3000
        assert bytes(loaded) == image

        oat = OatFile.from_buffer(loaded, base_address=base)
        method = oat.find_method("Lcom/example/Main;", "run", "()V")
        assert method.get_quick_compiled_entry_point() == 0x3000 + 0x2200

    def test_zero_fills_memory_beyond_file(self, image: bytes) -> None:
        parser = ELFParser(build_elf(image, file_bytes=len(image) - 16))
        assert parser.parse()
        loaded, _base = parser.load_oat_image()
        assert len(loaded) == len(image)
        assert bytes(loaded[:-16]) == image[:-16]
        assert bytes(loaded[-16:]) == b"\x00" * 16

    def test_custom_symbol_names(self, image: bytes) -> None:
        elf = build_elf(
            image,
            vaddr=0x1000,
            symbols={"start": (0x1000, 0), "lastword": (0x1000 + len(image) - 4, 4)},
        )
        parser = ELFParser(elf)
        assert parser.parse()
        loaded, base = parser.load_oat_image("start", "lastword")
        assert base == 0x1000 and bytes(loaded) == image

    def test_missing_symbol(self, image: bytes) -> None:
        parser = ELFParser(build_elf(image, symbols={"oatdata": (0x1000, 0)}))
        assert parser.parse()
        with pytest.raises(OatLoadError, match="oatlastword"):
            parser.load_oat_image()

    def test_inverted_symbols(self, image: bytes) -> None:
        parser = ELFParser(
            build_elf(image, symbols={"oatdata": (0x2000, 0), "oatlastword": (0x1000, 4)})
        )
        assert parser.parse()
        with pytest.raises(OatLoadError, match="does not follow"):
            parser.load_oat_image()

    def test_requires_parse(self, image: bytes) -> None:
        with pytest.raises(OatLoadError):
            ELFParser(build_elf(image)).load_oat_image()

    @pytest.mark.parametrize("bits", [32, 64])
    def test_span_beyond_load_segments(self, image: bytes, bits: int) -> None:
        last = (1 << 50) if bits == 64 else 0xFFFFFFF0
        parser = ELFParser(
            build_elf(image, bits=bits, symbols={"oatdata": (0x1000, 0), "oatlastword": (last, 4)})
        )
        assert parser.parse()
        with pytest.raises(OatLoadError, match="PT_LOAD memory"):
            parser.load_oat_image()

    def test_span_over_size_limit(self, image: bytes) -> None:
        parser = ELFParser(build_elf(image))
        assert parser.parse()
        with pytest.raises(OatLoadError, match="limit"):
            parser.load_oat_image(max_size=len(image) - 1)
        loaded, _base = parser.load_oat_image(max_size=len(image))
        assert len(loaded) == len(image)
