"""Tests for the inspection engine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from shared.config import ArtScopeConfig
from shared.logger import quiet_logger

from oatwalk.core.engine import OatwalkEngine
from oatwalk.core.errors import OatLoadError
from oatwalk.core.models import ImageFormat, InstructionSet, LookupStatus
from tests.builders import EM_ARM, build_elf, sample_builder

MAIN = "Lcom/example/Main;"


def _engine(**oatwalk_settings) -> OatwalkEngine:
    config = ArtScopeConfig()
    for key, value in oatwalk_settings.items():
        setattr(config.oatwalk, key, value)
    return OatwalkEngine(config=config, logger=quiet_logger("oatwalk.test.engine"))


@pytest.fixture
def raw_path(tmp_path: Path) -> Path:
    path = tmp_path / "base.oat"
    path.write_bytes(bytes(sample_builder().build().data))
    return path


@pytest.fixture
def elf_path(tmp_path: Path) -> Path:
    image = bytes(sample_builder(instruction_set="thumb2").build().data)
    path = tmp_path / "base.odex"
    path.write_bytes(build_elf(image, bits=32, machine=EM_ARM, vaddr=0x5000))
    return path


class TestInspect:

    def test_raw_report(self, raw_path: Path) -> None:
        report = _engine().inspect_sync(str(raw_path))
        assert report.container is ImageFormat.RAW
        assert report.path == str(raw_path.resolve())
        assert report.base_address == 0
        assert report.header.valid
        assert report.header.version == "064"
        assert report.header.instruction_set is InstructionSet.ARM64
        assert report.key_value_store == {"compiler-filter": "speed", "pic": "false"}
        assert [d.location for d in report.dex_files] == [
            "/data/app/base.apk",
            "/data/app/base.apk:classes2.dex",
        ]
        assert [d.class_def_count for d in report.dex_files] == [3, 2]
        assert report.walk_error is None

    def test_async_entry_point(self, raw_path: Path) -> None:
        report = asyncio.run(_engine().inspect(str(raw_path)))
        assert len(report.dex_files) == 2

    def test_elf_report(self, elf_path: Path) -> None:
        report = _engine().inspect_sync(str(elf_path))
        assert report.container is ImageFormat.ELF
        assert report.base_address == 0x5000
        assert report.header.instruction_set is InstructionSet.THUMB2
        assert len(report.dex_files) == 2

    def test_configured_base_address(self, raw_path: Path) -> None:
        report = _engine(base_address=0x70000000).inspect_sync(str(raw_path))
        assert report.base_address == 0x70000000

    def test_walk_error_is_recorded(self, tmp_path: Path) -> None:
        built = sample_builder().build()
        built.patch_u32(built.record_offsets[1], 0x7FFFFFFF)
        path = tmp_path / "corrupt.oat"
        path.write_bytes(bytes(built.data))

        report = _engine().inspect_sync(str(path))
        assert [d.index for d in report.dex_files] == [0]
        assert "index=1" in report.walk_error

    def test_invalid_header(self, tmp_path: Path) -> None:
        data = bytearray(sample_builder().build().data)
        data[4:8] = b"999\x00"
        path = tmp_path / "future.oat"
        path.write_bytes(bytes(data))

        report = _engine().inspect_sync(str(path))
        assert not report.header.valid
        assert report.dex_files == []
        assert "Invalid OAT header" in report.walk_error


class TestLoadErrors:

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(OatLoadError, match="not found"):
            _engine().inspect_sync(str(tmp_path / "nope.oat"))

    def test_file_too_large(self, raw_path: Path) -> None:
        with pytest.raises(OatLoadError, match="too large"):
            _engine(max_file_size=16).load_image(str(raw_path))

    def test_too_short_for_header(self, tmp_path: Path) -> None:
        path = tmp_path / "short.oat"
        path.write_bytes(b"oat\n064\x00")
        with pytest.raises(OatLoadError, match="Cannot set up"):
            _engine().load_image(str(path))

    def test_malformed_elf(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.odex"
        path.write_bytes(b"\x7fELF\x02\x01")
        with pytest.raises(OatLoadError):
            _engine().load_image(str(path))

    def test_corrupt_symbol_span(self, tmp_path: Path) -> None:
        image = bytes(sample_builder().build().data)
        path = tmp_path / "huge.odex"
        path.write_bytes(
            build_elf(image, symbols={"oatdata": (0x1000, len(image)), "oatlastword": (1 << 50, 4)})
        )
        with pytest.raises(OatLoadError, match="exceeds"):
            _engine().inspect_sync(str(path))

    def test_unknown_instruction_set(self) -> None:
        with pytest.raises(ValueError, match="Unknown instruction set"):
            _engine(instruction_set="sparc")


class TestLookup:

    def test_found_compiled(self, raw_path: Path) -> None:
        lookup = _engine().lookup_sync(str(raw_path), MAIN, "run", "()V")
        assert lookup.status is LookupStatus.FOUND
        assert lookup.compiled
        assert lookup.dex_location == "/data/app/base.apk"
        assert lookup.class_def_index == 0
        assert lookup.class_type == "all_compiled"
        assert lookup.method_kind == "virtual"
        assert lookup.class_method_index == 2
        assert lookup.access_flags == 0x0001
        assert lookup.modifiers == ["public"]
        assert lookup.code_offset == 0x2200
        assert lookup.entry_point == 0x2200
        assert lookup.code_pointer == 0x2200

    def test_found_interpreted(self, raw_path: Path) -> None:
        lookup = _engine().lookup_sync(str(raw_path), "Lcom/example/Util;", "slow", "()V")
        assert lookup.status is LookupStatus.FOUND
        assert not lookup.compiled
        assert lookup.entry_point is None
        assert lookup.modifiers == ["public", "static"]

    def test_thumb_code_pointer_from_elf(self, elf_path: Path) -> None:
        lookup = _engine().lookup_sync(str(elf_path), MAIN, "main", "([Ljava/lang/String;)V")
        assert lookup.entry_point == 0x5000 + 0x2101
        assert lookup.code_pointer == 0x5000 + 0x2100

    def test_isa_override(self, raw_path: Path) -> None:
        lookup = _engine(instruction_set="thumb").lookup_sync(
            str(raw_path), MAIN, "compute", "(IJ)J"
        )
        assert lookup.code_pointer == 0x2300

    def test_dex_location_restricts_search(self, raw_path: Path) -> None:
        engine = _engine()
        lookup = engine.lookup_sync(
            str(raw_path), "Lcom/example/Util;", "helper", "(I)I",
            dex_location="/data/app/base.apk:classes2.dex",
        )
        assert lookup.status is LookupStatus.FOUND
        assert lookup.code_offset == 0x5001

        missing = engine.lookup_sync(
            str(raw_path), MAIN, "run", "()V", dex_location="/data/app/other.apk"
        )
        assert missing.status is LookupStatus.NOT_FOUND
        assert missing.class_def_index is None

    def test_not_found(self, raw_path: Path) -> None:
        engine = _engine()
        no_class = engine.lookup_sync(str(raw_path), "Lcom/example/Nope;", "run", "()V")
        assert no_class.status is LookupStatus.NOT_FOUND
        assert no_class.class_def_index is None

        no_method = engine.lookup_sync(str(raw_path), MAIN, "walk", "()V")
        assert no_method.status is LookupStatus.NOT_FOUND
        assert no_method.class_def_index == 0
        assert no_method.error is None

    def test_failure(self, tmp_path: Path) -> None:
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0], len(built.data) + 4)
        path = tmp_path / "corrupt.oat"
        path.write_bytes(bytes(built.data))

        lookup = _engine().lookup_sync(str(path), MAIN, "run", "()V")
        assert lookup.status is LookupStatus.FAILURE
        assert MAIN in lookup.error
