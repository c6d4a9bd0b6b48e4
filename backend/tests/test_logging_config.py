"""
Tests for structured logging
"""
import json
import logging

from membership_fees.core.logging_config import (ContextualFormatter,
                                                 LoggingConfig,
                                                 SensitiveDataFilter,
                                                 calculation_context)


def _record(msg, **extra):
    record = logging.LogRecord("membership_fees.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_is_merged_into_records():
    formatter = ContextualFormatter()

    with LoggingConfig.context(operation="commit", member_id=7):
        with LoggingConfig.context(schedule_id=3):
            payload = json.loads(formatter.format(_record("Fee calculated", final_amount="48.55")))

    assert payload["operation"] == "commit"
    assert payload["member_id"] == 7
    assert payload["schedule_id"] == 3
    assert payload["final_amount"] == "48.55"
    assert calculation_context.get({}) == {}


def test_database_password_is_masked():
    record = _record("Connecting to postgresql://fees:hunter2@db:5432/fees")
    SensitiveDataFilter().filter(record)
    assert "hunter2" not in record.getMessage()
