import logging
from datetime import datetime

import pytest

from sinkhole.model import (
    Request,
    Response,
    ResponseType,
    answer_to_string,
    new_msg_with_answer,
    new_msg_with_question,
    question_to_string,
)
from sinkhole.querylog.writers import LogEntry, LoggerWriter, NoneWriter, Writer


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def capture():
    logger = logging.Logger("capture")
    logger.setLevel(logging.INFO)
    handler = _ListHandler()
    logger.addHandler(handler)
    return logger, handler


def _entry():
    return LogEntry(
        request=Request(req=new_msg_with_question("google.de.", "A")),
        response=Response(
            res=new_msg_with_answer("example.com", 123, "A", "123.124.122.122"),
            reason="Resolved",
            rtype=ResponseType.RESOLVED,
        ),
        start=datetime.now(),
        duration_ms=20,
    )


def test_logger_writer_logs_entry(capture):
    logger, handler = capture
    writer = LoggerWriter(logger)
    entry = _entry()
    writer.write(entry)

    assert len(handler.records) == 1
    record = handler.records[0]
    assert record.getMessage() == "query resolved"
    assert record.response_reason == "Resolved"
    assert record.duration_ms == 20
    assert record.question == "A (google.de.)"
    assert record.question == question_to_string(entry.request.req.question)
    assert record.answer == "A (123.124.122.122)"
    assert record.answer == answer_to_string(entry.response.res.answer)
    assert record.response_code == "NOERROR"


def test_logger_writer_clean_up_does_nothing(capture):
    logger, handler = capture
    writer = LoggerWriter(logger)
    assert writer.clean_up() is None
    assert handler.records == []


def test_none_writer_does_nothing():
    writer = NoneWriter()
    assert isinstance(writer, Writer)
    assert writer.write(None) is None
    assert writer.clean_up() is None


def test_writer_is_abstract():
    with pytest.raises(TypeError):
        Writer()