from __future__ import annotations

import json
import logging

import pytest

from sentra.core.logging import configure_logging, get_logger


def test_json_records_carry_logger_level_and_bound_context(caplog: pytest.LogCaptureFixture) -> None:
    configure_logging("INFO", json_output=True)
    caplog.set_level(logging.INFO)

    get_logger(name="sentra.tests.json", component="dispatch").info("drain_finished", launched=2)

    record = json.loads(caplog.records[-1].getMessage())
    assert record["event"] == "drain_finished"
    assert record["level"] == "info"
    assert record["logger"] == "sentra.tests.json"
    assert record["component"] == "dispatch"
    assert record["launched"] == 2
    assert "timestamp" in record


def test_http_client_loggers_are_quieted() -> None:
    configure_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger().level == logging.DEBUG
    configure_logging("INFO")
