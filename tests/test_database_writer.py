import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from sinkhole.model import (
    Request,
    Response,
    ResponseType,
    new_msg_with_answer,
    new_msg_with_question,
)
from sinkhole.querylog.database_writer import (
    LOG_ENTRIES,
    DatabaseWriter,
    new_database_writer,
)
from sinkhole.querylog.writers import LogEntry


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    yield eng
    eng.dispose()


def _entry(start):
    return LogEntry(
        request=Request(req=new_msg_with_question("google.de.", "A")),
        response=Response(
            res=new_msg_with_answer("example.com", 123, "A", "123.124.122.122"),
            reason="Resolved",
            rtype=ResponseType.RESOLVED,
        ),
        start=start,
        duration_ms=20,
    )


def test_entries_persisted_and_kept_within_retention(engine):
    writer = DatabaseWriter(engine, 7, 3600)
    try:
        writer.write(_entry(datetime.now()))
        writer.write(_entry(datetime.now() - timedelta(days=2)))
        writer.flush()
        assert writer.entry_count() == 2

        writer.clean_up()
        assert writer.entry_count() == 2
    finally:
        writer.close()


def test_old_entries_deleted(engine):
    writer = DatabaseWriter(engine, 1, 3600)
    try:
        writer.write(_entry(datetime.now()))
        writer.write(_entry(datetime.now() - timedelta(days=2)))
        writer.flush()
        assert writer.entry_count() == 2

        writer.clean_up()
        assert writer.entry_count() == 1
    finally:
        writer.close()


def test_stored_row_content(engine):
    writer = DatabaseWriter(engine, 7, 3600)
    try:
        writer.write(_entry(datetime.now()))
        writer.flush()
        with engine.connect() as connection:
            row = connection.execute(select(LOG_ENTRIES)).mappings().one()
    finally:
        writer.close()

    assert row["question_name"] == "google.de"
    assert row["question_type"] == "A"
    assert row["effective_tldp"] == "google.de"
    assert row["response_type"] == "RESOLVED"
    assert row["response_code"] == "NOERROR"
    assert row["answer"] == "A (123.124.122.122)"
    assert row["reason"] == "Resolved"
    assert row["duration_ms"] == 20


def test_periodic_flush(engine):
    writer = DatabaseWriter(engine, 7, 0.01)
    try:
        writer.write(_entry(datetime.now()))
        deadline = time.monotonic() + 5
        while writer.entry_count() < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert writer.entry_count() == 1
    finally:
        writer.close()


def test_close_flushes_pending(engine):
    writer = DatabaseWriter(engine, 7, 3600)
    writer.write(_entry(datetime.now()))
    writer.close()
    with engine.connect() as connection:
        assert len(connection.execute(select(LOG_ENTRIES)).all()) == 1


@pytest.mark.parametrize("db_type", ["mysql", "postgresql"])
def test_wrong_connection_parameters(db_type):
    with pytest.raises(ConnectionError, match="^can't create database connection"):
        new_database_writer(db_type, "wrong param", 7, 1)


def test_invalid_database_type():
    with pytest.raises(ValueError, match="^incorrect database type provided"):
        new_database_writer("invalidsql", "", 7, 1)