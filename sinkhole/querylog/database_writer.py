"""Query log writer that buffers entries and stores them in a SQL database."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any

import dns.rcode
import dns.rdatatype
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sinkhole.logsetup import prefixed_log
from sinkhole.model import answer_to_string, extract_domain
from sinkhole.querylog.writers import LogEntry, Writer

_METADATA = MetaData()

LOG_ENTRIES = Table(
    "log_entries",
    _METADATA,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_ts", DateTime, index=True),
    Column("client_ip", String(255)),
    Column("client_name", String(255), index=True),
    Column("duration_ms", Integer),
    Column("reason", Text),
    Column("response_type", String(255), index=True),
    Column("question_type", String(255)),
    Column("question_name", String(255)),
    Column("effective_tldp", String(255)),
    Column("answer", Text),
    Column("response_code", String(255)),
)

_URL_SCHEMES = {"mysql": "mysql", "postgresql": "postgresql"}


def _effective_tld_plus_one(domain: str) -> str:
    """Registrable part of ``domain``, taken as its last two labels."""
    labels = domain.split(".")
    if len(labels) < 2 or any(not label for label in labels):
        return ""
    return ".".join(labels[-2:])


def _naive_local(moment: datetime) -> datetime:
    return moment.astimezone().replace(tzinfo=None) if moment.tzinfo else moment


def _seconds(period: float | timedelta) -> float:
    return period.total_seconds() if isinstance(period, timedelta) else float(period)


class DatabaseWriter(Writer):
    """Collects entries in memory and writes them in bulk every flush period."""

    def __init__(
        self, engine: Engine, log_retention_days: int, flush_period: float | timedelta
    ) -> None:
        try:
            _METADATA.create_all(engine)
        except SQLAlchemyError as exc:
            raise RuntimeError(f"can't perform auto migration: {exc}") from exc

        self.engine = engine
        self.log_retention_days = log_retention_days
        self.flush_period = _seconds(flush_period)
        self._pending: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._owns_engine = False
        self._log = prefixed_log("database_writer")
        self._flusher = threading.Thread(target=self._periodic_flush, daemon=True)
        self._flusher.start()

    def _periodic_flush(self) -> None:
        while not self._stop.wait(self.flush_period):
            self.flush()

    def write(self, entry: LogEntry) -> None:
        request, response = entry.request, entry.response
        question = request.req.question[0]
        domain = extract_domain(question)
        row = {
            "request_ts": _naive_local(entry.start),
            "client_ip": "" if request.client_ip is None else str(request.client_ip),
            "client_name": "; ".join(request.client_names),
            "duration_ms": entry.duration_ms,
            "reason": response.reason,
            "response_type": str(response.rtype),
            "question_type": dns.rdatatype.to_text(question.rdtype),
            "question_name": domain,
            "effective_tldp": _effective_tld_plus_one(domain),
            "answer": answer_to_string(response.res.answer),
            "response_code": dns.rcode.to_text(response.res.rcode()),
        }
        with self._lock:
            self._pending.append(row)

    def flush(self) -> None:
        """Write all pending entries to the database."""
        with self._lock:
            if not self._pending:
                return
            self._log.trace("%d entries to write", len(self._pending))
            try:
                with self.engine.begin() as connection:
                    connection.execute(LOG_ENTRIES.insert(), self._pending)
            except SQLAlchemyError as exc:
                self._log.error("can't write log entries: %s", exc)
            self._pending = []

    def clean_up(self) -> None:
        """Delete entries older than the retention period."""
        deletion_date = datetime.now() - timedelta(days=self.log_retention_days)
        self._log.debug("deleting log entries with request_ts < %s", deletion_date)
        try:
            with self.engine.begin() as connection:
                connection.execute(
                    delete(LOG_ENTRIES).where(LOG_ENTRIES.c.request_ts < deletion_date)
                )
        except SQLAlchemyError as exc:
            self._log.error("can't delete log entries: %s", exc)

    def entry_count(self) -> int:
        """Number of entries stored in the database."""
        with self.engine.connect() as connection:
            return connection.execute(select(func.count()).select_from(LOG_ENTRIES)).scalar_one()

    def close(self) -> None:
        """Stop periodic flushing and write what is still pending."""
        self._stop.set()
        self._flusher.join()
        self.flush()
        if self._owns_engine:
            self.engine.dispose()


def new_database_writer(
    db_type: str, target: str, log_retention_days: int, flush_period: float | timedelta
) -> DatabaseWriter:
    """Connect to a ``mysql`` or ``postgresql`` database and return a writer for it."""
    scheme = _URL_SCHEMES.get(db_type)
    if scheme is None:
        raise ValueError(f"incorrect database type provided: {db_type}")

    url = target if "://" in target else f"{scheme}://{target}"
    try:
        engine = create_engine(url)
        with engine.connect():
            pass
    except Exception as exc:
        raise ConnectionError(f"can't create database connection: {exc}") from exc

    writer = DatabaseWriter(engine, log_retention_days, flush_period)
    writer._owns_engine = True
    return writer