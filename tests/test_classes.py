"""Tests for the class resolver."""

from __future__ import annotations

import logging

import pytest

from oatwalk.core.classes import find_class, find_class_in_dex, get_class
from oatwalk.core.errors import DexFormatError, OatDecodeError
from oatwalk.core.image import OatFile
from oatwalk.parsers.oat_class import OatClassType
from tests.builders import BuiltImage, sample_builder
from tests.conftest import BASE


class TestFindClass:

    def test_first_dex_file_wins(self, oat: OatFile) -> None:
        found = find_class(oat, "Lcom/example/Util;")
        assert found is not None
        oat_dex_file, oat_class = found
        assert oat_dex_file.index == 0
        assert oat_class.class_def_index == 1
        assert oat_class.oat_class_data.type is OatClassType.SOME_COMPILED

    def test_class_in_second_dex_file(self, oat: OatFile) -> None:
        oat_dex_file, oat_class = oat.find_class("Lcom/example/Other;")
        assert oat_dex_file.index == 1
        assert oat_class.class_def_index == 1
        assert oat_class.descriptor == "Lcom/example/Other;"
        assert oat_class.oat_file is oat

    @pytest.mark.parametrize(
        "descriptor",
        ["Lcom/example/Missing;", "Lcom/example/Main", "com/example/Main", ""],
    )
    def test_not_found(self, oat: OatFile, descriptor: str) -> None:
        assert oat.find_class(descriptor) is None

    def test_find_in_single_dex(self, oat: OatFile) -> None:
        second = oat.get_oat_dex_file(1)
        oat_class = find_class_in_dex(second, "Lcom/example/Util;")
        assert oat_class is not None
        assert oat_class.oat_class_data.type is OatClassType.ALL_COMPILED
        assert find_class_in_dex(second, "Lcom/example/Main;") is None

    def test_record_fields(self, oat: OatFile, built: BuiltImage) -> None:
        _dex, oat_class = oat.find_class("Lcom/example/Main;")
        data = oat_class.oat_class_data
        assert data.address == BASE + built.class_offsets[0][0]
        assert data.status == 10
        assert data.bitmap is None
        assert data.methods_pointer == data.address + 4

    def test_none_compiled_has_no_table(self, oat: OatFile) -> None:
        _dex, oat_class = oat.find_class("Lcom/example/Empty;")
        assert oat_class.oat_class_data.type is OatClassType.NONE_COMPILED
        assert oat_class.oat_class_data.methods_pointer is None


class TestGetClass:

    def test_matches_find_class(self, oat: OatFile) -> None:
        oat_dex_file, by_descriptor = oat.find_class("Lcom/example/Util;")
        by_index = get_class(oat_dex_file, by_descriptor.class_def_index)
        assert by_index.descriptor == by_descriptor.descriptor
        assert by_index.oat_class_data.address == by_descriptor.oat_class_data.address
        assert by_index.oat_class_data.bitmap == by_descriptor.oat_class_data.bitmap

    @pytest.mark.parametrize("index", [3, 1000, -1])
    def test_index_out_of_range(self, oat: OatFile, index: int) -> None:
        with pytest.raises(DexFormatError) as excinfo:
            get_class(oat.get_oat_dex_file(0), index)
        assert excinfo.value.location == "/data/app/base.apk"


class TestCorruptClassRecords:

    def _oat(self, built: BuiltImage, logger=None) -> OatFile:
        return OatFile.from_buffer(built.data, base_address=BASE, logger=logger)

    def test_offset_past_end(self, log_capture) -> None:
        logger, handler = log_capture
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0] + 4 * 1, len(built.data) + 8)
        oat = self._oat(built, logger)

        with pytest.raises(OatDecodeError) as excinfo:
            oat.find_class("Lcom/example/Util;")
        err = excinfo.value
        assert err.descriptor == "Lcom/example/Util;"
        assert err.index == 1
        assert err.location == "/data/app/base.apk"
        errors = handler.messages(logging.ERROR)
        assert any("Lcom/example/Util;" in m and "OatClassData" in m for m in errors)
        record = next(r for r in handler.records if r.levelno == logging.ERROR)
        assert record.decode_context == {
            "descriptor": "Lcom/example/Util;", "index": 1, "location": "/data/app/base.apk",
        }

    def test_failure_does_not_fall_through_to_later_dex(self) -> None:
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0] + 4 * 1, len(built.data) + 8)
        oat = self._oat(built)
        # classes2.dex also defines Util, but the first failure is final
        with pytest.raises(OatDecodeError):
            oat.find_class("Lcom/example/Util;")

    def test_other_classes_still_resolve(self) -> None:
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0] + 4 * 1, len(built.data) + 8)
        oat = self._oat(built)
        assert oat.find_class("Lcom/example/Main;") is not None

    def test_zero_offset(self) -> None:
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0], 0)
        oat = self._oat(built)
        with pytest.raises(OatDecodeError, match="zero"):
            oat.find_class("Lcom/example/Main;")

    def test_invalid_type(self) -> None:
        built = sample_builder().build()
        type_field = built.class_offsets[0][0] + 2
        built.data[type_field:type_field + 2] = (7).to_bytes(2, "little")
        oat = self._oat(built)
        with pytest.raises(OatDecodeError, match="invalid OatClass type 7"):
            get_class(oat.get_oat_dex_file(0), 0)

    def test_get_class_logs_without_descriptor(self, log_capture) -> None:
        logger, handler = log_capture
        built = sample_builder().build()
        built.patch_u32(built.class_table_offsets[0], len(built.data))
        oat = self._oat(built, logger)
        with pytest.raises(OatDecodeError) as excinfo:
            get_class(oat.get_oat_dex_file(0), 0)
        assert excinfo.value.descriptor is None
        assert any("at index 0" in m for m in handler.messages(logging.ERROR))
