"""Dual logging system - JSON structured and traditional text logs."""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


# Extra record attributes copied into the JSON log entries
CONTEXT_FIELDS = ("host_id", "plan_id", "job_id", "phase", "protocol", "details")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Format log records as traditional text."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    log_dir: Path,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    Set up dual logging system.

    Args:
        log_dir: Directory for log files
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_output: Whether to output to console

    Returns:
        Configured package logger
    """
    structured_dir = log_dir / "structured"
    text_dir = log_dir / "text"
    structured_dir.mkdir(parents=True, exist_ok=True)
    text_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("firmware_rollout")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    stamp = datetime.now().strftime('%Y%m%d')

    json_handler = logging.FileHandler(structured_dir / f"firmware-rollout-{stamp}.json")
    json_handler.setFormatter(JSONFormatter())
    logger.addHandler(json_handler)

    text_handler = logging.FileHandler(text_dir / f"firmware-rollout-{stamp}.log")
    text_handler.setFormatter(TextFormatter())
    logger.addHandler(text_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(TextFormatter())
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str = "firmware_rollout") -> logging.Logger:
    """Get logger instance."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    host_id: Optional[str] = None,
    plan_id: Optional[str] = None,
    job_id: Optional[str] = None,
    phase: Optional[str] = None,
    protocol: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    exc_info: bool = False
) -> None:
    """
    Log message with contextual information.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        host_id: Host identifier
        plan_id: Orchestration plan ID
        job_id: Update job ID
        phase: Execution phase or job status
        protocol: Management protocol in use
        details: Additional details dictionary
        exc_info: Include exception information
    """
    context = {
        "host_id": host_id,
        "plan_id": plan_id,
        "job_id": job_id,
        "phase": phase,
        "protocol": protocol,
        "details": details,
    }
    extra = {k: v for k, v in context.items() if v}

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra, exc_info=exc_info)
