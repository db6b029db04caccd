"""Tests for the OAT header validator, header decoding and key-value store."""

from __future__ import annotations

import pytest

from oatwalk.core.errors import OatDecodeError
from oatwalk.core.memory import MappedRegion
from oatwalk.parsers.oat_header import (
    OatHeader,
    header_size_for_version,
    is_valid_header,
    read_key_value_store,
)
from tests.builders import OatBuilder, sample_builder


class TestHeaderValidator:

    @pytest.mark.parametrize("version", [b"045", b"064"])
    def test_supported_versions(self, version: bytes) -> None:
        assert is_valid_header(b"oat\n" + version + b"\x00" + b"\x00" * 64)

    @pytest.mark.parametrize(
        "head",
        [
            b"oat\n063\x00",
            b"oat\n064 ",
            b"dex\n064\x00",
            b"OAT\n064\x00",
            b"oat\n",
            b"",
        ],
    )
    def test_rejected(self, head: bytes) -> None:
        assert not is_valid_header(head)

    def test_ignores_counts(self) -> None:
        data = bytearray(sample_builder().build().data)
        data[20:24] = b"\xff\xff\xff\xff"  # dex_file_count
        assert is_valid_header(data)


class TestHeaderDecode:

    def test_sizes(self) -> None:
        assert header_size_for_version(b"045\x00") == 84
        assert header_size_for_version(b"064\x00") == 72
        assert header_size_for_version(b"999\x00") == 72

    def test_fields_064(self) -> None:
        built = sample_builder().build()
        region = MappedRegion(built.data, 0x4000, 0x4000 + len(built.data))
        header = OatHeader.parse(region, 0x4000)
        assert header.is_valid
        assert header.version_string == "064"
        assert header.dex_file_count == 2
        assert header.instruction_set == 2
        assert header.executable_offset == 0x1000
        assert header.image_patch_delta == -0x2000
        assert header.key_value_store_size == built.key_value_store_size
        assert header.header_size == 72
        assert len(header.trampolines) == 7
        assert "portable_resolution_trampoline_offset" not in header.trampolines

    def test_fields_045(self) -> None:
        built = sample_builder(version=b"045").build()
        region = MappedRegion(built.data, 0, len(built.data))
        header = OatHeader.parse(region, 0)
        assert header.header_size == 84
        assert len(header.trampolines) == 10
        assert header.trampolines["portable_resolution_trampoline_offset"] == 0x140
        assert header.key_value_store_size == built.key_value_store_size

    def test_truncated_header(self) -> None:
        data = bytes(sample_builder().build().data[:40])
        region = MappedRegion(data, 0, len(data))
        with pytest.raises(OatDecodeError, match="OAT header"):
            OatHeader.parse(region, 0)


class TestKeyValueStore:

    def _region(self, blob: bytes) -> MappedRegion:
        return MappedRegion(blob, 0x100, 0x100 + len(blob))

    def test_pairs(self) -> None:
        blob = b"pic\x00true\x00compiler-filter\x00speed\x00"
        store = read_key_value_store(self._region(blob), 0x100, len(blob))
        assert store == {"pic": "true", "compiler-filter": "speed"}

    def test_empty(self) -> None:
        assert read_key_value_store(self._region(b""), 0x100, 0) == {}

    def test_unterminated_value(self) -> None:
        blob = b"pic\x00true"
        with pytest.raises(OatDecodeError, match="unterminated value"):
            read_key_value_store(self._region(blob), 0x100, len(blob))

    def test_size_past_region(self) -> None:
        blob = b"pic\x00true\x00"
        with pytest.raises(OatDecodeError):
            read_key_value_store(self._region(blob), 0x100, len(blob) + 8)

    def test_terminator_outside_declared_size(self) -> None:
        blob = b"pic\x00true\x00"
        with pytest.raises(OatDecodeError):
            read_key_value_store(self._region(blob), 0x100, len(blob) - 1)

    def test_builder_store(self) -> None:
        built = OatBuilder(key_value_store={"image-location": "/system/framework/boot.art"}).build()
        region = MappedRegion(built.data, 0, len(built.data))
        store = read_key_value_store(region, built.header_size, built.key_value_store_size)
        assert store == {"image-location": "/system/framework/boot.art"}
