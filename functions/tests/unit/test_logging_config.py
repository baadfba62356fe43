"""Tests for log level configuration."""

import logging

import pytest
import structlog
from structlog.testing import capture_logs

from config.settings import Settings
from utils.pipeline_logger import configure_logging


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize("name,expected", [
    ("INFO", logging.INFO),
    ("debug", logging.DEBUG),
    ("Warning", logging.WARNING),
    ("loud", logging.INFO),
])
def test_log_level_value(name, expected):
    assert Settings(log_level=name).log_level_value == expected


def test_events_below_level_dropped(restore_structlog):
    configure_logging(logging.WARNING)

    with capture_logs() as logs:
        log = structlog.get_logger()
        log.info("session_updated", session_id="sess-1")
        log.warning("amount_drift", session_id="sess-1")

    assert [entry["event"] for entry in logs] == ["amount_drift"]
