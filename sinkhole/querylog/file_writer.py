"""Query log writer that appends tab-separated rows to daily files."""

from __future__ import annotations

import csv
import os
import re
from datetime import datetime, timezone
from pathlib import Path

import dns.rcode

from sinkhole.logsetup import prefixed_log
from sinkhole.model import answer_to_string, question_to_string
from sinkhole.querylog.writers import LogEntry, Writer

LOGGER_PREFIX = "fileQueryLogWriter"

_INVALID_FILE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]+")
_DATE_FORMAT = "%Y-%m-%d"
_SECONDS_PER_DAY = 24 * 60 * 60


def escape(name: str) -> str:
    """Replace every run of characters unsafe in a file name with ``_``."""
    return _INVALID_FILE_CHARS.sub("_", name)


def create_query_log_row(entry: LogEntry) -> list[str]:
    """The CSV fields written for one log entry."""
    request, response = entry.request, entry.response
    return [
        entry.start.strftime("%Y-%m-%d %H:%M:%S"),
        "" if request.client_ip is None else str(request.client_ip),
        "; ".join(request.client_names),
        str(entry.duration_ms),
        response.reason,
        question_to_string(request.req.question),
        answer_to_string(response.res.answer),
        dns.rcode.to_text(response.res.rcode()),
    ]


class FileWriter(Writer):
    """Writes entries to ``<date>_<client>.log`` files in a directory."""

    def __init__(self, target: str | os.PathLike, per_client: bool, log_retention_days: int) -> None:
        target = str(target)
        if target and not os.path.exists(target):
            raise FileNotFoundError(
                f"query log directory '{target}' does not exist or is not writable"
            )
        self.target = target
        self.per_client = per_client
        self.log_retention_days = log_retention_days
        self._log = prefixed_log(LOGGER_PREFIX)

    def write(self, entry: LogEntry) -> None:
        client_prefix = "-".join(entry.request.client_names) if self.per_client else "ALL"
        file_name = f"{entry.start.strftime(_DATE_FORMAT)}_{escape(client_prefix)}.log"
        path = os.path.join(self.target, file_name)
        try:
            with open(path, "a", newline="", encoding="utf-8") as file:
                writer = csv.writer(file, delimiter="\t", lineterminator="\n")
                writer.writerow(create_query_log_row(entry))
        except OSError as exc:
            self._log.bind(file_name=path).error("can't write to file: %s", exc)

    def clean_up(self) -> None:
        """Delete log files whose date is older than the retention period."""
        self._log.trace("starting clean up")
        try:
            names = os.listdir(self.target or ".")
        except OSError as exc:
            self._log.bind(target=self.target).error("can't list log directory: %s", exc)
            return

        now = datetime.now(timezone.utc)
        for name in names:
            if not (name.endswith(".log") and len(name) > 10):
                continue
            try:
                day = datetime.strptime(name[:10], _DATE_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            age_days = int((now - day).total_seconds() / _SECONDS_PER_DAY)
            if self.log_retention_days > 0 and age_days > self.log_retention_days:
                self._log.bind(
                    file=name, ageInDays=age_days, logRetentionDays=self.log_retention_days
                ).info("existing log file is older than retention time and will be deleted")
                try:
                    Path(self.target or ".", name).unlink()
                except OSError as exc:
                    self._log.bind(file=name).error("can't remove file: %s", exc)


def new_csv_writer(target: str | os.PathLike, per_client: bool, log_retention_days: int) -> FileWriter:
    """Create a FileWriter; raise FileNotFoundError if ``target`` is missing."""
    return FileWriter(target, per_client, log_retention_days)