"""Logging setup with plain-text and JSON output."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import Any

from devreports.config import Config

LOGGER_NAME = "devreports"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def parse_level(level: str) -> int:
    """Map a level name to a logging level; unknown names mean debug."""
    return _LEVELS.get(level, logging.DEBUG)


def _level_name(record: logging.LogRecord) -> str:
    if record.levelno >= logging.ERROR:
        return "ERROR"
    if record.levelno >= logging.WARNING:
        return "WARN"
    if record.levelno >= logging.INFO:
        return "INFO"
    return "DEBUG"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created).astimezone().isoformat()


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Formats each record as one JSON object with its extra attributes."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": _timestamp(record),
            "level": _level_name(record),
            "msg": record.getMessage(),
        }
        entry.update(_extras(record))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class _TextFormatter(logging.Formatter):
    """Formats each record as ``key=value`` pairs."""

    @staticmethod
    def _quote(value: Any) -> str:
        text = str(value)
        if not text or any(ch.isspace() or ch in '="' for ch in text):
            return json.dumps(text, ensure_ascii=False)
        return text

    def format(self, record: logging.LogRecord) -> str:
        pairs = [
            ("time", _timestamp(record)),
            ("level", _level_name(record)),
            ("msg", record.getMessage()),
            *_extras(record).items(),
        ]
        if record.exc_info:
            pairs.append(("exc", self.formatException(record.exc_info)))
        return " ".join(f"{key}={self._quote(value)}" for key, value in pairs)


def setup(config: Config) -> logging.Logger:
    """Configure the package logger to write to stdout and return it."""
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if config.logger.json else _TextFormatter())
    log.addHandler(handler)
    log.setLevel(parse_level(config.logger.level))
    log.propagate = False
    return log