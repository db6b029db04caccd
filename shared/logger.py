"""
ArtScope Structured Logger
===========================

Provides :class:`ArtScopeLogger`, the logging facade used by the OAT
navigation core and the CLI.  Records go to a Rich console handler on
stderr and, optionally, to a rotating log file as plain text or JSON
lines.

Decode failures carry the record that failed (dex-file ``index``,
``location``, class ``descriptor``, ``address``).  Those keywords are
attached to the log record as ``decode_context``; the console and plain
formats append them after the message and the JSON format emits them as
a ``context`` object.

Library code receives a logger instance rather than reaching for a
global one; a logger built with ``console_output=False`` and no
``log_file`` stays silent.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
    }
)

# Keywords accepted by the log methods and the order they are rendered in
CONTEXT_FIELDS: tuple[str, ...] = ("descriptor", "index", "location", "address")

_MAX_BYTES = 10_485_760
_BACKUP_COUNT = 5


def _render_context(context: dict[str, Any]) -> str:
    parts = []
    for key, value in context.items():
        if key == "address" and isinstance(value, int):
            value = f"{value:#x}"
        parts.append(f"{key}={value}")
    return " ".join(parts)


# ============================ Formatters ===================================


class _ContextFormatter(logging.Formatter):
    """Plain formatter appending ``[key=value ...]`` decode context."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = getattr(record, "decode_context", None)
        if context:
            text = f"{text} [{_render_context(context)}]"
        return text


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single-line JSON object.

    Output fields::

        {
          "timestamp": "...",
          "level": "ERROR",
          "logger": "artscope.oatwalk.cli",
          "message": "Error decoding oat dex file #1: ...",
          "tool_name": "oatwalk.cli",
          "operation": "find_method",
          "context": {"index": 1, "address": "0x70001000"}
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for attr in ("tool_name", "operation"):
            val = getattr(record, attr, None)
            if val is not None:
                entry[attr] = val

        context = getattr(record, "decode_context", None)
        if context:
            entry["context"] = {
                key: f"{value:#x}" if key == "address" and isinstance(value, int) else value
                for key, value in context.items()
            }

        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: str) -> RichHandler:
    # stderr keeps ``--json`` output on stdout machine-readable
    handler = RichHandler(
        console=Console(theme=_LOG_THEME, stderr=True),
        level=level,
        show_path=False,
        show_time=True,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(_ContextFormatter("%(message)s"))
    return handler


# ========================== ArtScopeLogger =================================


class ArtScopeLogger:
    """Structured, context-aware logger for ArtScope tools.

    Usage::

        log = ArtScopeLogger("oatwalk.cli", log_file="oatwalk.log", json_logs=True)
        log.info("Loading %s", path)
        with log.operation("find_method"):
            log.error("Error decoding OatClassData", index=3, location="base.apk")

    Args:
        tool_name:       Identifying name, e.g. ``"oatwalk.core"``.
        log_level:       Minimum severity (DEBUG, INFO, WARNING, ERROR).
        log_file:        Path to the rotating log file. ``None`` disables file logging.
        json_logs:       If ``True`` the file handler emits JSON lines.
        console_output:  If ``True`` attach the Rich console handler.
    """

    def __init__(
        self,
        tool_name: str,
        *,
        log_level: str = "INFO",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        console_output: bool = True,
    ) -> None:
        self._tool_name = tool_name
        self._operation: str | None = None

        level = log_level.upper()
        self._logger = logging.getLogger(f"artscope.{tool_name}")
        self._logger.setLevel(getattr(logging, level, logging.INFO))
        self._logger.propagate = False

        # Prevent duplicate handlers on re-instantiation
        self._logger.handlers.clear()

        if console_output:
            self._logger.addHandler(_console_handler(level))

        if log_file:
            file_path = Path(log_file)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(
                filename=str(file_path),
                maxBytes=_MAX_BYTES,
                backupCount=_BACKUP_COUNT,
                encoding="utf-8",
            )
            fh.setLevel(getattr(logging, level, logging.INFO))
            if json_logs:
                fh.setFormatter(_JSONFormatter())
            else:
                fh.setFormatter(
                    _ContextFormatter(
                        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                        datefmt="%Y-%m-%dT%H:%M:%S%z",
                    )
                )
            self._logger.addHandler(fh)

        # Silent library logger: keep logging.lastResort from printing
        if not self._logger.handlers:
            self._logger.addHandler(logging.NullHandler())

    # ------------------------------------------------------------------ #
    #  Operation scope
    # ------------------------------------------------------------------ #

    class _OperationContext:
        def __init__(self, parent: ArtScopeLogger, operation: str) -> None:
            self._parent = parent
            self._operation = operation
            self._prev: str | None = None

        def __enter__(self) -> ArtScopeLogger:
            self._prev = self._parent._operation
            self._parent._operation = self._operation
            return self._parent

        def __exit__(self, *exc: Any) -> None:
            self._parent._operation = self._prev

    def operation(self, name: str) -> _OperationContext:
        """Tag every record logged inside the ``with`` block with *name*."""
        return self._OperationContext(self, name)

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _log(self, level: int, msg: str, args: tuple[Any, ...], context: dict[str, Any]) -> None:
        unknown = set(context) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"unexpected log context: {', '.join(sorted(unknown))}")
        extra: dict[str, Any] = {
            "tool_name": self._tool_name,
            "operation": self._operation,
        }
        if context:
            extra["decode_context"] = {
                key: context[key] for key in CONTEXT_FIELDS if context.get(key) is not None
            }
        self._logger.log(level, msg, *args, extra=extra)

    def debug(self, msg: str, *args: Any, **context: Any) -> None:
        self._log(logging.DEBUG, msg, args, context)

    def info(self, msg: str, *args: Any, **context: Any) -> None:
        self._log(logging.INFO, msg, args, context)

    def warning(self, msg: str, *args: Any, **context: Any) -> None:
        self._log(logging.WARNING, msg, args, context)

    def error(self, msg: str, *args: Any, **context: Any) -> None:
        """Log an ERROR; *context* takes the decode-context keywords."""
        self._log(logging.ERROR, msg, args, context)

    # ------------------------------------------------------------------ #
    #  Timing helper
    # ------------------------------------------------------------------ #

    class _TimingContext:
        def __init__(self, logger_inst: ArtScopeLogger, label: str) -> None:
            self._logger = logger_inst
            self._label = label
            self._start: float = 0.0

        def __enter__(self) -> ArtScopeLogger._TimingContext:
            self._start = time.perf_counter()
            self._logger.debug("Started: %s", self._label)
            return self

        def __exit__(self, *exc: Any) -> None:
            self._logger.debug(
                "Completed: %s (%.3f sec)",
                self._label,
                time.perf_counter() - self._start,
            )

    def timed(self, label: str) -> _TimingContext:
        """Log DEBUG records at the start and end of the ``with`` block.

        Usage::

            with log.timed("inspect boot.oat"):
                report = engine.build_report(oat_file)
        """
        return self._TimingContext(self, label)

    @property
    def underlying(self) -> logging.Logger:
        """Direct access to the stdlib :class:`logging.Logger`."""
        return self._logger


def quiet_logger(tool_name: str) -> ArtScopeLogger:
    """Return a logger with no console or file output attached."""
    return ArtScopeLogger(tool_name, console_output=False)
