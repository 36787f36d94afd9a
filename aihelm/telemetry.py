"""Logging for AI Helm.

Emits log records to stdout and appends them to an append-only log file.
Terminal job outcomes are written as one structured JSON line each.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("aihelm")


def setup_logging(log_file: str, level: int = logging.INFO) -> None:
    """Configure the aihelm logger with stdout and file handlers.

    Safe to call more than once; handlers are only attached the first time.

    Args:
        log_file: Path to the append-only log file.
        level: Minimum level for both handlers.
    """
    logger.setLevel(level)

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(fmt)
        logger.addHandler(stdout_handler)

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(level)
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)


def log_job_event(
    *,
    job_id: str,
    session_id: str,
    outcome: str,
    demo: bool,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    attempts: int = 0,
    cost_usd: Optional[float] = None,
    security_score: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    """Log the terminal outcome of a job as one JSON line.

    Args:
        job_id: The job identifier.
        session_id: The owning connection's session id.
        outcome: Terminal label ("complete", "halted", "cancelled", "error",
            "rejected").
        demo: Whether the job ran on the demo path.
        provider: Provider that produced the accepted response, if any.
        model: Concrete model id that produced it, if any.
        attempts: Generation attempts made.
        cost_usd: Estimated cost charged to the demo budget.
        security_score: Effective security score, if screening ran.
        error: Error message if the job failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "job_id": job_id,
        "session_id": session_id,
        "outcome": outcome,
        "demo": demo,
        "provider": provider,
        "model": model,
        "attempts": attempts,
    }

    if cost_usd is not None:
        record["cost_usd"] = round(cost_usd, 6)

    if security_score is not None:
        record["security_score"] = security_score

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
