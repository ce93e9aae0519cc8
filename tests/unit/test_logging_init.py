from __future__ import annotations

import logging
from io import StringIO

import pytest

from roster_sync.logging.init import (
    APP_LOGGER_NAME,
    SUMMARY_LEVEL,
    LabeledFormatter,
    get_logger,
    log_summary,
    reset_logging,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _fresh_logging():
    reset_logging()
    yield
    reset_logging()


def test_setup_logging_creates_logger_with_labeled_formatter():
    logger = setup_logging()
    assert logger.name == APP_LOGGER_NAME == "roster_sync"
    assert logger.level == logging.INFO
    assert logger.propagate is False
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, LabeledFormatter)


def test_logging_labeled_prefixes():
    captured = StringIO()
    logger = logging.getLogger("test_roster_sync_labels")
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    handler = logging.StreamHandler(captured)
    handler.setFormatter(LabeledFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    logger.debug("d")
    logger.info("i")
    logger.warning("w")
    logger.error("e")
    logger.critical("c")
    logger.log(SUMMARY_LEVEL, "s")

    assert captured.getvalue().splitlines() == ["DEBUG d", "INFO i", "WARN w", "ERROR e", "CRITICAL c", "SUMMARY s"]


def test_setup_logging_idempotent():
    first = setup_logging()
    second = setup_logging()
    assert first is second
    assert len(first.handlers) == 1
    assert get_logger() is first


def test_module_loggers_inherit_handler(capsys):
    setup_logging()
    logging.getLogger("roster_sync.services.orchestrator").info("event=TEST run=1")
    assert "INFO event=TEST run=1" in capsys.readouterr().out


def test_log_summary(capsys):
    setup_logging()
    log_summary("run=r1 status=success")
    assert logging.getLevelName(SUMMARY_LEVEL) == "SUMMARY"
    assert capsys.readouterr().out.strip() == "SUMMARY run=r1 status=success"
