"""Shared fixtures for the Oatwalk test-suite."""

from __future__ import annotations

import logging

import pytest

from shared.logger import ArtScopeLogger

from oatwalk.core.image import OatFile
from tests.builders import BuiltImage, sample_builder

BASE = 0x70000000


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int = logging.DEBUG) -> list[str]:
        return [r.getMessage() for r in self.records if r.levelno >= level]


@pytest.fixture
def log_capture():
    """A silent ArtScopeLogger plus a handler recording what it emits."""
    logger = ArtScopeLogger("oatwalk.test", log_level="DEBUG", console_output=False)
    handler = _ListHandler()
    logger.underlying.addHandler(handler)
    yield logger, handler
    logger.underlying.removeHandler(handler)


@pytest.fixture
def built() -> BuiltImage:
    return sample_builder().build()


@pytest.fixture
def oat(built: BuiltImage, log_capture) -> OatFile:
    logger, _handler = log_capture
    return OatFile.from_buffer(built.data, base_address=BASE, logger=logger)
