"""Tests for log formatting."""

import json
import logging

from app.core.logging import DevelopmentFormatter, StructuredFormatter, setup_logging


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("app.jobs", logging.INFO, __file__, 10, "Scan done for %s", ("Grand",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_includes_extra_fields(self):
        output = json.loads(StructuredFormatter().format(make_record(hotel_id="h-1", created=3)))

        assert output["level"] == "INFO"
        assert output["logger"] == "app.jobs"
        assert output["message"] == "Scan done for Grand"
        assert output["data"] == {"hotel_id": "h-1", "created": 3}

    def test_json_formatter_without_extra(self):
        output = json.loads(StructuredFormatter().format(make_record()))
        assert "data" not in output

    def test_development_formatter(self):
        line = DevelopmentFormatter().format(make_record(job="expiry_scan"))
        assert "Scan done for Grand" in line
        assert "job=expiry_scan" in line


def test_setup_logging_quiets_scheduler_logs():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(level="debug", fmt="text")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, DevelopmentFormatter)
        assert logging.getLogger("apscheduler").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
