"""Tests for the structured logger."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from shared.logger import ArtScopeLogger, quiet_logger


def _close(log: ArtScopeLogger) -> None:
    for handler in list(log.underlying.handlers):
        handler.close()
        log.underlying.removeHandler(handler)


def test_quiet_logger_has_only_null_handler() -> None:
    log = quiet_logger("oatwalk.test.quiet")
    handlers = log.underlying.handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.NullHandler)
    assert log.underlying.propagate is False


def test_json_file_records(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "oatwalk.log"
    log = ArtScopeLogger(
        "oatwalk.test.json",
        log_level="DEBUG",
        log_file=log_file,
        json_logs=True,
        console_output=False,
    )
    with log.operation("find_class"):
        log.error("Decode failed", index=3, location="classes.dex", address=0x70001000)
    log.info("done")
    _close(log)

    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert len(lines) == 2
    first, second = lines
    assert first["level"] == "ERROR"
    assert first["logger"] == "artscope.oatwalk.test.json"
    assert first["tool_name"] == "oatwalk.test.json"
    assert first["operation"] == "find_class"
    assert first["context"] == {"index": 3, "location": "classes.dex", "address": "0x70001000"}
    assert "operation" not in second
    assert "context" not in second


def test_plain_file_appends_context(tmp_path: Path) -> None:
    log_file = tmp_path / "oatwalk.log"
    log = ArtScopeLogger("oatwalk.test.plain", log_file=log_file, console_output=False)
    log.error("Error decoding OatClassData", descriptor="LA;", index=0, location=None)
    _close(log)

    line = log_file.read_text().strip()
    assert line.endswith("Error decoding OatClassData [descriptor=LA; index=0]")


def test_level_filters_file_output(tmp_path: Path) -> None:
    log_file = tmp_path / "oatwalk.log"
    log = ArtScopeLogger(
        "oatwalk.test.level",
        log_level="WARNING",
        log_file=log_file,
        console_output=False,
    )
    log.info("hidden")
    log.warning("shown")
    _close(log)

    text = log_file.read_text()
    assert "shown" in text
    assert "hidden" not in text


def test_unknown_context_keyword(log_capture) -> None:
    log, _handler = log_capture
    with pytest.raises(TypeError, match="offset"):
        log.error("bad", offset=4)


def test_operation_context_nests(log_capture) -> None:
    log, handler = log_capture
    with log.operation("outer"):
        with log.operation("inner"):
            log.info("a")
        log.info("b")
    log.info("c")
    assert [getattr(r, "operation") for r in handler.records] == ["inner", "outer", None]


def test_timed_logs_start_and_completion(log_capture) -> None:
    log, handler = log_capture
    with log.timed("walk"):
        pass
    messages = handler.messages(logging.DEBUG)
    assert messages[0] == "Started: walk"
    assert messages[1].startswith("Completed: walk")
