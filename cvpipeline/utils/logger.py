import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional


# Context keys copied from `extra=` into the JSON entry
EXTRA_KEYS = (
    "category", "operation", "file_name", "size", "success", "error", "error_code",
    "submission_id", "email", "attempt", "max_retries", "score", "ats_score",
    "duration_ms", "scheduled_at", "next_retry", "sent", "failed", "total",
    "alert_type", "severity", "details", "status", "count", "interval_seconds",
    "stages", "durations",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in EXTRA_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        # Add source location for errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )


def setup_logger(name: str = "cv_pipeline", level: str = "INFO") -> logging.Logger:
    """
    Setup application logger.

    With LOG_FORMAT=json, outputs JSON to stdout for log drain ingestion.
    Otherwise logs human-readable lines and writes JSON to a rotating file.
    """
    logger = logging.getLogger(name)

    # Don't add handlers if they already exist
    if logger.handlers:
        return logger

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    is_production = os.getenv("LOG_FORMAT") == "json"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    if is_production:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(SimpleFormatter())

    logger.addHandler(console_handler)

    # Rotating file handler for local development only
    if not is_production and os.getenv("LOG_TO_FILE", "1") == "1":
        try:
            log_dir = Path("logs")
            log_dir.mkdir(exist_ok=True)

            file_handler = RotatingFileHandler(
                log_dir / "cv_pipeline.log",
                maxBytes=5 * 1024 * 1024,  # 5MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            # Read-only filesystems in some deployments
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Create default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get logger instance"""
    if name:
        return setup_logger(name)
    return logger


# ---------------------------------------------------------------------------
# Event sink: one function per event family
# ---------------------------------------------------------------------------

def log_file_operation(
    operation: str,
    filename: str,
    success: bool,
    size: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    extra = {"category": "file_operation", "operation": operation,
             "file_name": filename, "success": success}
    if size is not None:
        extra["size"] = size
    if error:
        extra["error"] = error
    if success:
        logger.info(f"file.{operation}", extra=extra)
    else:
        logger.error(f"file.{operation}", extra=extra)


def log_cv_analysis(
    submission_id: str,
    score: int,
    duration_ms: float,
    success: bool,
    error: Optional[str] = None,
) -> None:
    extra = {"category": "cv_analysis", "submission_id": submission_id,
             "score": score, "duration_ms": round(duration_ms, 1), "success": success}
    if error:
        extra["error"] = error
    if success:
        logger.info("cv.analysis", extra=extra)
    else:
        logger.error("cv.analysis", extra=extra)


def log_email_delivery(
    submission_id: str,
    email: str,
    success: bool,
    attempt: int,
    error: Optional[str] = None,
) -> None:
    extra = {"category": "email_delivery", "submission_id": submission_id,
             "email": email, "success": success, "attempt": attempt}
    if error:
        extra["error"] = error
    if success:
        logger.info("email.delivery", extra=extra)
    else:
        logger.warning("email.delivery", extra=extra)


def log_alert(alert_type: str, severity: str, message: str, details: Optional[dict] = None) -> None:
    logger.warning(
        f"alert.raised: {message}",
        extra={"category": "alerting", "alert_type": alert_type,
               "severity": severity, "details": details or {}},
    )
