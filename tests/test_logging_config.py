"""Tests for the structured log formatters."""

import json
import logging

from studyport.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    configure_logging,
)


def _record(**extra):
    record = logging.LogRecord("studyport.test", logging.INFO, __file__, 10,
                               "Imported %s", ("study",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_groups_fields():
    line = JSONFormatter().format(_record(
        study_uuid="u-1", staging_token="abcd1234", event_type="import.created",
        request_id="r-9", status=200, unrelated="x",
    ))
    entry = json.loads(line)
    assert entry["msg"] == "Imported study"
    assert entry["level"] == "INFO"
    assert entry["event_type"] == "import.created"
    assert entry["area"] == "import"
    assert entry["transfer"] == {"study_uuid": "u-1", "staging_token": "abcd1234"}
    assert entry["request"] == {"request_id": "r-9", "status": 200}
    assert "alert" not in entry
    assert "unrelated" not in json.dumps(entry)


def test_json_formatter_flags_reconcile_events():
    entry = json.loads(JSONFormatter().format(
        _record(event_type="import.reconcile", dir_name="existing")))
    assert entry["alert"] is True
    assert entry["transfer"] == {"dir_name": "existing"}
    assert "request" not in entry


def test_readable_formatter_shows_event_and_suffix():
    line = ReadableFormatter().format(_record(
        event_type="import.noop", duration_ms=12.0,
        study_uuid="0123456789abcdef", dir_name="existing",
    ))
    assert "<import.noop>" in line
    assert "study=01234567" in line
    assert "dir=existing" in line
    assert "12ms" in line


def test_readable_formatter_without_extras_has_no_suffix():
    line = ReadableFormatter().format(_record())
    assert line.endswith("Imported study")


def test_log_format_override(app):
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    app.config["LOG_FORMAT"] = "json"
    try:
        configure_logging(app)
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
    finally:
        app.config["LOG_FORMAT"] = ""
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
