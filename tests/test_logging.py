"""
Tests for structured logging.
"""

import json
import logging

from clustercfg.common.logging_setup import JsonFormatter, get_service_logger


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("clustercfg.store", logging.INFO, __file__, 1, "Deploy %s", ("a.jar#1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    line = JsonFormatter().format(make_record(service="store", record="group1", artifact="a.jar#1"))

    data = json.loads(line)
    assert data["message"] == "Deploy a.jar#1"
    assert data["service"] == "store"
    assert data["record"] == "group1"
    assert data["artifact"] == "a.jar#1"
    assert "msg" not in data


def test_service_logger_names_and_levels(monkeypatch):
    monkeypatch.setenv("CLUSTERCFG_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("CLUSTERCFG_LOG_FORMAT", "text")

    adapter = get_service_logger("test-component")

    assert adapter.logger.name == "clustercfg.test-component"
    assert adapter.logger.level == logging.DEBUG
    assert not isinstance(adapter.logger.handlers[0].formatter, JsonFormatter)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


def test_bound_context_stays_on_its_adapter():
    adapter = get_service_logger("context-test")
    handler = ListHandler()
    adapter.logger.addHandler(handler)
    original_factory = logging.getLogRecordFactory()

    try:
        bound = adapter.bind(member_id="server-1")
        bound.info("joining", extra={"records": ["cluster"]})
        adapter.info("unrelated")
    finally:
        adapter.logger.removeHandler(handler)

    assert logging.getLogRecordFactory() is original_factory
    joined, unrelated = handler.records
    assert joined.member_id == "server-1"
    assert joined.records == ["cluster"]
    assert joined.service == "context-test"
    assert not hasattr(unrelated, "member_id")
    assert unrelated.service == "context-test"
