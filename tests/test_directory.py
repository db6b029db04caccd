"""Tests for the dex-file directory walker."""

from __future__ import annotations

import logging

import pytest

from oatwalk.core.directory import decode_next, find_dex_file, get_oat_dex_file
from oatwalk.core.errors import DexFormatError, OatDecodeError, OatIndexError
from oatwalk.core.image import OatFile
from tests.builders import BuiltImage, DexBuilder, OatBuilder
from tests.conftest import BASE

LOCATION_1 = "/data/app/base.apk"
LOCATION_2 = "/data/app/base.apk:classes2.dex"


def _oat(built: BuiltImage, **kwargs) -> OatFile:
    return OatFile.from_buffer(built.data, base_address=BASE, **kwargs)


class TestWalk:

    def test_iterates_in_order(self, oat: OatFile, built: BuiltImage) -> None:
        records = list(oat.iter_dex_files())
        assert [r.index for r in records] == [0, 1]
        assert [r.location for r in records] == [LOCATION_1, LOCATION_2]
        first = records[0].data
        assert first.address == BASE + built.record_offsets[0]
        assert first.dex_file_offset == built.dex_offsets[0]
        assert first.dex_file_pointer == BASE + built.dex_offsets[0]
        assert first.location_checksum == 0xC0FFEE
        assert first.class_definition_offsets == tuple(built.class_offsets[0])
        assert first.record_size == built.record_offsets[1] - built.record_offsets[0]

    def test_walk_is_restartable(self, oat: OatFile) -> None:
        first = [r.location for r in oat.iter_dex_files()]
        second = [r.location for r in oat.iter_dex_files()]
        assert first == second

    def test_decode_next_returns_cursor(self, oat: OatFile, built: BuiltImage) -> None:
        _data, cursor = decode_next(oat, oat.dex_file_stream_start)
        assert cursor == BASE + built.record_offsets[1]

    def test_zero_dex_files(self) -> None:
        oat = _oat(OatBuilder().build())
        assert list(oat.iter_dex_files()) == []
        assert oat.find_dex_file(LOCATION_1) is None


class TestGetByIndex:

    def test_each_index(self, oat: OatFile) -> None:
        assert get_oat_dex_file(oat, 0).location == LOCATION_1
        assert oat.get_oat_dex_file(1).location == LOCATION_2

    @pytest.mark.parametrize("index", [2, 100, -1])
    def test_out_of_range(self, oat: OatFile, index: int) -> None:
        with pytest.raises(OatIndexError):
            oat.get_oat_dex_file(index)

    def test_out_of_range_is_index_error(self, oat: OatFile) -> None:
        with pytest.raises(IndexError):
            oat.get_oat_dex_file(2)


class TestFindByLocation:

    def test_exact_match(self, oat: OatFile) -> None:
        found = find_dex_file(oat, LOCATION_2)
        assert found is not None
        assert found.index == 1

    def test_bytes_location(self, oat: OatFile) -> None:
        found = oat.find_dex_file(LOCATION_1.encode())
        assert found is not None and found.index == 0

    @pytest.mark.parametrize(
        "location",
        [
            "/data/app/base.ap",             # prefix
            "/data/app/base.apk:classes2",   # prefix of the second record
            "/data/app/base.apk:classes2.dex.x",  # suffix
            "/DATA/APP/BASE.APK",            # case
            "",
        ],
    )
    def test_near_misses_are_not_found(self, oat: OatFile, location: str) -> None:
        assert oat.find_dex_file(location) is None


class TestCorruptRecords:

    def _two_records(self) -> OatBuilder:
        dex = DexBuilder().add_class("LA;", direct=[("f", "()V")])
        return OatBuilder().add_dex("a.dex", dex).add_dex("b.dex", dex)

    def test_location_size_past_end(self, log_capture) -> None:
        logger, handler = log_capture
        built = self._two_records().build()
        built.patch_u32(built.record_offsets[1], 0x7FFFFFFF)
        oat = _oat(built, logger=logger)

        assert oat.get_oat_dex_file(0).location == "a.dex"
        with pytest.raises(OatDecodeError) as excinfo:
            oat.get_oat_dex_file(1)
        assert excinfo.value.index == 1
        assert "index=1" in str(excinfo.value)
        assert any("#1" in m for m in handler.messages(logging.ERROR))

    def test_failure_before_match_is_not_not_found(self) -> None:
        built = self._two_records().build()
        built.patch_u32(built.record_offsets[0], 0x7FFFFFFF)
        oat = _oat(built)
        with pytest.raises(OatDecodeError) as excinfo:
            oat.find_dex_file("b.dex")
        assert excinfo.value.index == 0

    def test_match_before_corruption_is_found(self) -> None:
        built = self._two_records().build()
        built.patch_u32(built.record_offsets[1], 0x7FFFFFFF)
        oat = _oat(built)
        assert oat.find_dex_file("a.dex").index == 0

    def test_zero_dex_offset(self) -> None:
        built = self._two_records().build()
        dex_offset_field = built.record_offsets[0] + 4 + len(b"a.dex") + 4
        built.patch_u32(dex_offset_field, 0)
        oat = _oat(built)
        with pytest.raises(OatDecodeError, match="dex file offset is zero"):
            oat.get_oat_dex_file(0)

    def test_dex_offset_past_end(self) -> None:
        built = self._two_records().build()
        dex_offset_field = built.record_offsets[0] + 4 + len(b"a.dex") + 4
        built.patch_u32(dex_offset_field, len(built.data) + 0x100)
        oat = _oat(built)
        with pytest.raises(DexFormatError):
            oat.get_oat_dex_file(0)

    def test_bad_dex_magic(self) -> None:
        built = self._two_records().build()
        built.data[built.dex_offsets[1]:built.dex_offsets[1] + 4] = b"zip\n"
        oat = _oat(built)
        assert oat.get_oat_dex_file(0).location == "a.dex"
        with pytest.raises(DexFormatError, match="magic") as excinfo:
            list(oat.iter_dex_files())
        assert excinfo.value.index == 1

    def test_class_table_past_end(self) -> None:
        built = self._two_records().build()
        # Inflate class_defs_size of the last module so its offset table overruns the image
        class_defs_size = built.dex_offsets[1] + 96
        built.patch_u32(class_defs_size, 0x00FFFFFF)
        oat = _oat(built)
        with pytest.raises(OatDecodeError):
            oat.get_oat_dex_file(1)

    def test_dex_file_count_larger_than_stream(self) -> None:
        builder = self._two_records()
        builder.dex_file_count = 3
        oat = _oat(builder.build())
        assert [r.location for r in _take(oat, 2)] == ["a.dex", "b.dex"]
        with pytest.raises(OatDecodeError) as excinfo:
            oat.get_oat_dex_file(2)
        assert excinfo.value.index == 2


def _take(oat: OatFile, n: int) -> list:
    walk = oat.iter_dex_files()
    return [next(walk) for _ in range(n)]
