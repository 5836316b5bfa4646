# tests/test_logging_metrics.py
from __future__ import annotations

import json
import logging

import pytest

from edgewire import metrics
from edgewire.edge.edge_logging import configure_logging, log_event


@pytest.fixture
def edgewire_logger():
    logger = logging.getLogger("edgewire")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    configured = logger.__dict__.pop("_edgewire_configured", None)
    yield logger
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate
    logger.__dict__.pop("_edgewire_configured", None)
    if configured is not None:
        logger.__dict__["_edgewire_configured"] = configured


def test_configure_logging_reads_level_and_is_repeatable(monkeypatch, edgewire_logger) -> None:
    monkeypatch.setenv("EDGE_LOG_LEVEL", "warning")
    configure_logging()
    assert edgewire_logger.level == logging.WARNING
    assert len(edgewire_logger.handlers) == 1
    assert edgewire_logger.propagate is False

    monkeypatch.setenv("EDGE_LOG_LEVEL", "DEBUG")
    configure_logging()
    assert edgewire_logger.level == logging.DEBUG
    assert len(edgewire_logger.handlers) == 1


def test_log_event_emits_one_json_line(caplog) -> None:
    logger = logging.getLogger("tests.edge_events")
    caplog.set_level(logging.INFO, logger="tests.edge_events")

    log_event(logger, "session_opened", ref=7, device_id=b"\x01\x02")

    [rec] = [r for r in caplog.records if r.name == "tests.edge_events"]
    payload = json.loads(rec.getMessage())
    assert payload["event"] == "session_opened"
    assert payload["ref"] == 7
    assert payload["device_id"] == "0102"
    assert isinstance(payload["ts_ms"], int)


def test_log_event_is_silent_below_info(caplog) -> None:
    logger = logging.getLogger("tests.edge_quiet")
    logger.setLevel(logging.WARNING)
    caplog.set_level(logging.WARNING, logger="tests.edge_quiet")
    log_event(logger, "ignored")
    assert not [r for r in caplog.records if r.name == "tests.edge_quiet"]


def test_counters_and_snapshot() -> None:
    metrics.inc_counter("edge_x")
    metrics.inc_counter("edge_x", 2)
    metrics.inc_counter("")
    metrics.set_gauge("edge_sessions_open", 4)

    snap = metrics.snapshot()
    assert snap["counters"] == {"edge_x": 3}
    assert snap["gauges"] == {"edge_sessions_open": 4}
    assert metrics.counter("edge_missing") == 0
