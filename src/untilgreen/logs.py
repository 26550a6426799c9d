"""File logging for a run: text or JSON lines, leveled, with structured fields.

Modules log through ``logging.getLogger(__name__)`` and attach structured
fields with ``extra={"fields": {...}}``. ``configure_logging`` installs one
file handler on the ``untilgreen`` logger for the duration of a run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from untilgreen.constants import DEFAULT_LOG_FORMAT, DEFAULT_LOG_LEVEL, LOG_LEVELS
from untilgreen.utils import _strip_ansi

PACKAGE_LOGGER = "untilgreen"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def normalize_level(level: str) -> str:
    lowered = str(level).strip().lower()
    if lowered == "warning":
        lowered = "warn"
    return lowered if lowered in LOG_LEVELS else DEFAULT_LOG_LEVEL


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = getattr(record, "fields", None)
    if not isinstance(fields, dict):
        return {}
    return {str(key): value for key, value in fields.items() if value is not None}


class TextFormatter(logging.Formatter):
    """``<local time> [LEVEL] message key=value ...`` with keys sorted."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
        label = _LABELS.get(record.levelno, record.levelname)
        fields = _record_fields(record)
        suffix = "".join(f" {key}={fields[key]}" for key in sorted(fields))
        return f"{stamp} [{label}] {record.getMessage()}{suffix}"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": _LABELS.get(record.levelno, record.levelname),
            "msg": record.getMessage(),
        }
        payload.update(_record_fields(record))
        return json.dumps(payload, default=str)


def _build_handler(path: Path, log_format: str) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(JsonFormatter() if log_format == "json" else TextFormatter())
    return handler


class SessionLogFile:
    """The run's log file; can be renamed once a pending session gets its id."""

    def __init__(self, path: Path, *, log_format: str = DEFAULT_LOG_FORMAT, level: str = DEFAULT_LOG_LEVEL) -> None:
        self.path = path
        self.log_format = log_format if log_format in ("text", "json") else DEFAULT_LOG_FORMAT
        self.level = normalize_level(level)
        self._handler = _build_handler(path, self.log_format)
        self._logger = logging.getLogger(PACKAGE_LOGGER)
        self._logger.setLevel(_LEVELS[self.level])
        self._logger.propagate = False
        self._logger.addHandler(self._handler)

    def maybe_rotate(self, next_path: Path) -> bool:
        if next_path == self.path:
            return False
        self._logger.removeHandler(self._handler)
        self._handler.close()
        next_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.path.rename(next_path)
        except OSError:
            self._attach(self.path)
            raise
        self.path = next_path
        self._attach(next_path)
        return True

    def _attach(self, path: Path) -> None:
        self._handler = _build_handler(path, self.log_format)
        self._logger.addHandler(self._handler)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


def configure_logging(path: Path, *, log_format: str, level: str) -> SessionLogFile:
    return SessionLogFile(path, log_format=log_format, level=level)


class AgentOutputWriter:
    """Buffers streamed agent text and logs it one complete line at a time."""

    def __init__(self, logger: logging.Logger, *, agent: str, stream: str) -> None:
        self._logger = logger
        self._agent = agent
        self._stream = stream
        self._buffer = ""

    def write(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer += _strip_ansi(chunk)
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._emit(line)

    def flush(self) -> None:
        rest = self._buffer.rstrip()
        self._buffer = ""
        if rest:
            self._emit(rest)

    def _emit(self, line: str) -> None:
        self._logger.debug(
            "agent_output",
            extra={"fields": {"agent": self._agent, "stream": self._stream, "line": line}},
        )
