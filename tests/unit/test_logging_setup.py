import json
import logging

import pytest

from app.logging_setup import JsonFormatter


@pytest.mark.unit
def test_json_formatter_keeps_structured_extras_only() -> None:
    record = logging.LogRecord("runtime", logging.WARNING, __file__, 1, "retry item rescheduled", None, None)
    record.component = "domain.retry_queue.sweep"
    record.attempt = 2
    record.error_code = "storage_transient"
    record.unrelated = "dropped"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "retry item rescheduled"
    assert payload["component"] == "domain.retry_queue.sweep"
    assert payload["attempt"] == 2
    assert payload["error_code"] == "storage_transient"
    assert "unrelated" not in payload
    assert "order_id" not in payload
