import json
import logging

from app.core import context
from app.core.logging import JsonFormatter, RequestContextFilter, audit_event, get_audit_logger


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_request_context():
    context.set_request_id("req-1")
    context.set_client_ip("203.0.113.7")
    try:
        record = _record()
        RequestContextFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        context.clear_context()

    assert payload["message"] == "hello"
    assert payload["request_id"] == "req-1"
    assert payload["client_ip"] == "203.0.113.7"
    assert payload["stream"] == "transactional"
    assert "event" not in payload


def test_json_formatter_renders_audit_fields():
    record = _record("recovery.completed", event="recovery.completed", fields={"session_id": "s1"})
    payload = json.loads(JsonFormatter(stream_label="audit").format(record))

    assert payload["stream"] == "audit"
    assert payload["event"] == "recovery.completed"
    assert payload["fields"] == {"session_id": "s1"}


def test_audit_event_goes_to_audit_logger():
    captured: list[logging.LogRecord] = []

    class Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            captured.append(record)

    logger = get_audit_logger()
    handler = Capture()
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        audit_event("recovery.revoked", revoked=2)
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)

    (record,) = captured
    assert record.event == "recovery.revoked"
    assert record.fields == {"revoked": 2}
