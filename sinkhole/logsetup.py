"""Process-wide logging setup: levels, output formats and prefixed loggers."""

from __future__ import annotations

import enum
import json
import logging
import sys
from datetime import datetime
from typing import Any, Mapping

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class FormatType(enum.Enum):
    """Output format of log records."""

    TEXT = 0  # logging as text
    JSON = 1  # JSON format

    def __str__(self) -> str:
        return self.name.lower()


class Level(enum.Enum):
    """Configurable log level."""

    INFO = 0
    TRACE = 1
    DEBUG = 2
    WARN = 3
    ERROR = 4
    FATAL = 5

    def __str__(self) -> str:
        return self.name.lower()

    @property
    def logging_level(self) -> int:
        """The matching numeric level of the logging module."""
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    Level.INFO: logging.INFO,
    Level.TRACE: TRACE,
    Level.DEBUG: logging.DEBUG,
    Level.WARN: logging.WARNING,
    Level.ERROR: logging.ERROR,
    Level.FATAL: logging.CRITICAL,
}

_RECORD_LEVEL_NAMES = {
    TRACE: "trace",
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}

# A handler level above every real level lets no record through.
_SILENT_LEVEL = logging.CRITICAL + 1


def _parse(enum_cls: type[enum.Enum], name: str) -> Any:
    for member in enum_cls:
        if str(member) == name:
            return member
    choices = ", ".join(str(member) for member in enum_cls)
    raise ValueError(f"{name} is not a valid {enum_cls.__name__}, try [{choices}]")


def parse_format_type(name: str) -> FormatType:
    """Return the FormatType called ``name``; raise ValueError if there is none."""
    return _parse(FormatType, name)


def parse_level(name: str) -> Level:
    """Return the Level called ``name``; raise ValueError if there is none."""
    return _parse(Level, name)


def format_type_names() -> list[str]:
    """All valid format type names, in declaration order."""
    return [str(member) for member in FormatType]


def level_names() -> list[str]:
    """All valid level names, in declaration order."""
    return [str(member) for member in Level]


class _FieldAdapter(logging.LoggerAdapter):
    """Logger that attaches a set of key/value fields to every record."""

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any]) -> None:
        super().__init__(logger, dict(fields))

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self.extra)

    def bind(self, **fields: Any) -> "_FieldAdapter":
        """Return a new logger carrying these fields in addition to the current ones."""
        return _FieldAdapter(self.logger, {**self.extra, **fields})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = kwargs.pop("extra", None) or {}
        kwargs["extra"] = {"fields": {**self.extra, **extra}}
        return msg, kwargs

    def trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(TRACE, msg, *args, **kwargs)


def _level_label(levelno: int) -> str:
    return _RECORD_LEVEL_NAMES.get(levelno, logging.getLevelName(levelno).lower())


def _quote(value: Any) -> str:
    text = str(value)
    if text == "" or any(ch.isspace() or ch in '"=' for ch in text):
        return json.dumps(text)
    return text


class _TextFormatter(logging.Formatter):
    def __init__(self, timestamps: bool) -> None:
        super().__init__()
        self._timestamps = timestamps

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(getattr(record, "fields", {}))
        prefix = fields.pop("prefix", "")
        parts = []
        if self._timestamps:
            stamp = datetime.fromtimestamp(record.created).strftime(TIMESTAMP_FORMAT)
            parts.append(f"[{stamp}]")
        parts.append(_level_label(record.levelno).upper())
        if prefix:
            parts.append(f"{prefix}:")
        parts.append(record.getMessage())
        parts.extend(f"{key}={_quote(value)}" for key, value in sorted(fields.items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = dict(getattr(record, "fields", {}))
        data["level"] = _level_label(record.levelno)
        data["msg"] = record.getMessage()
        data["time"] = (
            datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")
        )
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


_logger = logging.getLogger("sinkhole")
_logger.propagate = False
_handler = logging.StreamHandler(sys.stderr)
_logger.handlers[:] = [_handler]


def get_logger() -> logging.Logger:
    """Return the global logger."""
    return _logger


def prefixed_log(prefix: str) -> _FieldAdapter:
    """Return the global logger with a ``prefix`` field attached."""
    return _FieldAdapter(_logger, {"prefix": prefix})


def escape_input(text: str) -> str:
    """Remove line breaks from ``text``."""
    return text.replace("\n", "").replace("\r", "")


def configure_logger(
    level: Level | str, format_type: FormatType | str, log_timestamp: bool = True
) -> None:
    """Apply level, output format and timestamp setting to the global logger."""
    if isinstance(level, str):
        level = parse_level(level)
    if not isinstance(level, Level):
        raise ValueError(f"invalid log level {level}")
    if isinstance(format_type, str):
        format_type = parse_format_type(format_type)

    _logger.setLevel(level.logging_level)

    if format_type is FormatType.TEXT:
        _handler.setFormatter(_TextFormatter(log_timestamp))
    elif format_type is FormatType.JSON:
        _handler.setFormatter(_JSONFormatter())


def silence() -> None:
    """Discard all further log output."""
    _handler.setLevel(_SILENT_LEVEL)


configure_logger(Level.INFO, FormatType.TEXT, True)