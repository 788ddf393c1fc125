"""Query log entries and the simple query log writers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import dns.rcode

from sinkhole.logsetup import prefixed_log
from sinkhole.model import Request, Response, answer_to_string, question_to_string

LOGGER_PREFIX = "queryLog"


@dataclass
class LogEntry:
    """One resolved query together with its response and timing."""

    request: Request
    response: Response
    start: datetime
    duration_ms: int = 0


class Writer(abc.ABC):
    """Destination for query log entries."""

    @abc.abstractmethod
    def write(self, entry: LogEntry | None) -> None:
        """Record one entry."""

    @abc.abstractmethod
    def clean_up(self) -> None:
        """Remove entries older than the retention period."""


class NoneWriter(Writer):
    """Writer that discards everything."""

    def write(self, entry: LogEntry | None) -> None:
        return None

    def clean_up(self) -> None:
        return None


class LoggerWriter(Writer):
    """Writer that emits every entry as a log record."""

    def __init__(self, logger: Any = None) -> None:
        self.logger = logger if logger is not None else prefixed_log(LOGGER_PREFIX)

    def write(self, entry: LogEntry) -> None:
        request, response = entry.request, entry.response
        fields = {
            "client_ip": request.client_ip,
            "client_names": "; ".join(request.client_names),
            "response_reason": response.reason,
            "question": question_to_string(request.req.question),
            "response_code": dns.rcode.to_text(response.res.rcode()),
            "answer": answer_to_string(response.res.answer),
            "duration_ms": entry.duration_ms,
        }
        self.logger.info("query resolved", extra=fields)

    def clean_up(self) -> None:
        return None