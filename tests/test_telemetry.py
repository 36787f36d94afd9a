"""Tests for logging setup and job outcome lines."""

import json
import logging
from pathlib import Path
from typing import Iterator

import pytest

from aihelm.telemetry import log_job_event, logger, setup_logging


@pytest.fixture()
def _bare_logger() -> Iterator[None]:
    """Detach handlers so setup_logging starts from scratch."""
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in saved:
        logger.addHandler(handler)


@pytest.mark.usefixtures("_bare_logger")
def test_setup_logging_is_idempotent(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "aihelm.log"
    setup_logging(str(log_file))
    setup_logging(str(log_file))

    assert len(logger.handlers) == 2
    assert log_file.parent.is_dir()


def test_job_event_is_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="aihelm"):
        log_job_event(
            job_id="job-1",
            session_id="s-1",
            outcome="complete",
            demo=True,
            provider="gemini",
            model="gemini-2.5-flash",
            attempts=2,
            cost_usd=0.00012345678,
            security_score=1,
        )

    record = json.loads(caplog.records[-1].getMessage())
    assert record["job_id"] == "job-1"
    assert record["outcome"] == "complete"
    assert record["attempts"] == 2
    assert record["cost_usd"] == 0.000123
    assert record["security_score"] == 1
    assert "error" not in record


def test_job_event_error_field(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="aihelm"):
        log_job_event(job_id="j", session_id="s", outcome="error", demo=False, error="boom")

    record = json.loads(caplog.records[-1].getMessage())
    assert record["error"] == "boom"
    assert "cost_usd" not in record
