import json
import logging

import pytest

from order_printer.core.logging import JsonFormatter, RequestIdFilter, configure_logging, log_job_event
from order_printer.core.models import PrintJob


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def _record(msg="hello", **extra):
    record = logging.LogRecord("order_printer.test", logging.INFO, __file__, 1, msg, (), None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_emits_job_fields():
    record = _record(event="job.failed", job_id="abc", job_type="order", status="failed", error="timeout: stalled")
    RequestIdFilter().filter(record)
    out = json.loads(JsonFormatter().format(record))

    assert out["msg"] == "hello"
    assert out["level"] == "INFO"
    assert out["request_id"] == "-"
    assert out["event"] == "job.failed"
    assert out["job_id"] == "abc"
    assert out["error"] == "timeout: stalled"
    assert "bytes" not in out


def test_request_id_filter_keeps_existing_id():
    record = _record(request_id="req-1")
    RequestIdFilter().filter(record)
    assert record.request_id == "req-1"


def test_configure_logging_json(monkeypatch, restore_root_logging):
    monkeypatch.setenv("ORDERPRINTER_JSON_LOGS", "1")
    root = configure_logging()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)

    root = configure_logging(json_logs=False)
    assert not isinstance(root.handlers[0].formatter, JsonFormatter)


def test_log_job_event_attaches_fields(caplog):
    logger = logging.getLogger("order_printer.test")
    job = PrintJob(id="j1", payload={}, status="printing")
    with caplog.at_level(logging.INFO, logger="order_printer.test"):
        log_job_event(logger, "job.delivered", job, "Job %s sent", job.id, bytes=120, elapsed_ms=4)

    record = caplog.records[-1]
    assert record.getMessage() == "[job.delivered] Job j1 sent"
    assert record.event == "job.delivered"
    assert record.job_id == "j1"
    assert record.status == "printing"
    assert record.bytes == 120
    assert record.elapsed_ms == 4
