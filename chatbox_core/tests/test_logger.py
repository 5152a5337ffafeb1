import json
import logging

from chatbox_core.infrastructure.logging.logger import JsonFormatter, setup_logger


def make_record(msg, extra=None):
    record = logging.LogRecord("chatbox_core", logging.INFO, __file__, 1, msg, None, None)
    if extra is not None:
        record.extra = extra
    return record


def test_json_formatter_merges_structured_fields(monkeypatch):
    class SettingsStub:
        log_redact_content = False

    monkeypatch.setattr("chatbox_core.infrastructure.logging.logger.settings", SettingsStub())
    line = JsonFormatter().format(make_record("Fanout started", {"run_id": "r1", "target_ids": ["a", "b"]}))
    data = json.loads(line)
    assert data["msg"] == "Fanout started"
    assert data["level"] == "INFO"
    assert data["name"] == "chatbox_core"
    assert data["run_id"] == "r1"
    assert data["target_ids"] == ["a", "b"]
    assert data["ts"].endswith("Z")


def test_json_formatter_redacts_long_messages(monkeypatch):
    class SettingsStub:
        log_redact_content = True

    monkeypatch.setattr("chatbox_core.infrastructure.logging.logger.settings", SettingsStub())
    data = json.loads(JsonFormatter().format(make_record("x" * 200)))
    assert data["msg"] == "x" * 64


def test_setup_logger_adds_handler_once():
    logger = setup_logger()
    setup_logger()
    handlers = [h for h in logger.handlers if getattr(h, "_chatbox_json", False)]
    assert len(handlers) == 1
