"""Tests for sync logging helpers."""

import importlib
import logging

import pytest

from localsync.sync.logging_config import PerformanceTimer, SyncEventFormatter, log_sync_event


@pytest.mark.parametrize("module_name", [
    "localsync.sync.cache",
    "localsync.sync.conflict_resolver",
    "localsync.sync.connectivity",
    "localsync.sync.coordinator",
    "localsync.sync.migration",
    "localsync.sync.operation_queue",
    "localsync.sync.remote",
])
def test_sync_modules_log_under_package_logger(module_name):
    module = importlib.import_module(module_name)

    assert module.logger.name == module_name
    assert logging.getLogger("localsync").handlers


def test_formatter_appends_sync_fields():
    record = logging.LogRecord("localsync.test", logging.INFO, __file__, 1, "pushed", None, None)
    record.key = "theme"
    record.attempts = 2

    assert SyncEventFormatter(fmt="%(message)s").format(record) == "pushed [key=theme, attempts=2]"


def test_log_sync_event_attaches_fields(caplog):
    logger = logging.getLogger("localsync.tests")
    with caplog.at_level(logging.DEBUG, logger="localsync"):
        log_sync_event(logger, "sync_committed", "theme", "Pushed theme", operation_id="op-1")

    record = caplog.records[-1]
    assert record.event_type == "sync_committed"
    assert record.key == "theme"
    assert record.operation_id == "op-1"


def test_performance_timer_records_errors(caplog):
    logger = logging.getLogger("localsync.tests")
    with caplog.at_level(logging.DEBUG, logger="localsync"):
        with pytest.raises(KeyError):
            with PerformanceTimer(logger, "get_data", key="k") as timer:
                raise KeyError("k")

    record = caplog.records[-1]
    assert record.operation == "get_data"
    assert record.error_type == "KeyError"
    assert timer.latency_ms >= 0
