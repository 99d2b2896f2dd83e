"""Tests for the logging setup."""

import json
import logging

import pytest
import structlog

from roadassist.logging_config import LOG_FILE, setup_logging


@pytest.fixture
def configured(tmp_path):
    setup_logging(tmp_path, json_logs=True)
    yield tmp_path / LOG_FILE
    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, "_roadassist", False)]:
        root.removeHandler(handler)
        handler.close()
    structlog.reset_defaults()


def test_structlog_and_stdlib_records_reach_the_log_file(configured):
    structlog.get_logger("roadassist.tests").info("call_placed", call_id="c1")
    logging.getLogger("uvicorn.error").warning("server busy")

    lines = [json.loads(line) for line in configured.read_text(encoding="utf-8").splitlines()]
    placed = next(line for line in lines if line["event"] == "call_placed")
    assert placed["call_id"] == "c1"
    assert placed["level"] == "info"
    assert placed["logger"] == "roadassist.tests"

    busy = next(line for line in lines if line["event"] == "server busy")
    assert busy["level"] == "warning"
    assert busy["logger"] == "uvicorn.error"


def test_setup_twice_does_not_duplicate_handlers(configured):
    setup_logging(configured.parent, json_logs=False)
    ours = [h for h in logging.getLogger().handlers if getattr(h, "_roadassist", False)]
    assert len(ours) == 2
