import logging

from core.error_handler import StructuredLogger, set_correlation_id


def test_structured_logger_redacts_sensitive_keys(monkeypatch):
    logger = StructuredLogger("tests")
    monkeypatch.setenv("ENVIRONMENT", "development")

    # allowlist: placeholder values, not real secrets
    data = {
        "api_key": "placeholder_key",  # pragma: allowlist secret
        "email": "writer@example.com",
        "novel_id": 7,
    }
    sanitized = logger._sanitize_data(data)

    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["email"] == "[REDACTED]"
    assert sanitized["novel_id"] == 7


def test_structured_logger_redacts_nested_values():
    logger = StructuredLogger("tests")

    sanitized = logger._sanitize_data(
        {"upstream": {"authorization": "Bearer placeholder"}, "units": [{"token": "x"}]}
    )

    assert sanitized["upstream"]["authorization"] == "[REDACTED]"
    assert sanitized["units"][0]["token"] == "[REDACTED]"


def test_structured_logger_header_like_redaction():
    logger = StructuredLogger("tests")

    header = {"name": "Authorization", "value": "Bearer placeholder_token"}
    redacted = logger._redact_header_like(header)

    assert redacted is not None
    assert redacted["value"] == "[REDACTED]"
    assert logger._redact_header_like({"name": "Accept", "value": "text/event-stream"}) is None


def test_structured_logger_warning_carries_correlation_id(caplog):
    logger = StructuredLogger("tests.structured")
    set_correlation_id("corr-123")

    with caplog.at_level(logging.WARNING, logger="tests.structured"):
        logger.warning("Batch rejected", novel_id=7, api_key="placeholder")

    (record,) = caplog.records
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "[corr-123] Batch rejected"
    assert record.structured_data["correlation_id"] == "corr-123"
    assert record.structured_data["novel_id"] == 7
    assert record.structured_data["api_key"] == "[REDACTED]"
    set_correlation_id(None)
