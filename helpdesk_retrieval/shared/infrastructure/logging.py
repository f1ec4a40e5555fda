"""
Structured Logging
==================

JSON-structured logging with correlation ID tracking.

Provides:
- Structured JSON logs (parseable by log aggregators)
- Correlation ID for tracing one indexing run or search
- Contextual loggers for modules

Usage:
    from helpdesk_retrieval.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Chunk stored", extra={"source_id": "12345"})
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

_SECRET_MARKERS = ("password", "api_key", "secret")
_environment = "unknown"


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    if any(marker in lowered for marker in _SECRET_MARKERS):
        return True
    # token counters (tokens_in, input_tokens, ...) are not credentials
    return "token" in lowered and "tokens" not in lowered


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    Custom JSON formatter with additional fields.

    Adds:
    - timestamp in ISO format
    - correlation_id when available
    - Environment info
    """

    def add_fields(
        self,
        record_dict: dict[str, Any],
        log_record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(record_dict, log_record, message_dict)

        if "timestamp" not in record_dict or not record_dict.get("timestamp"):
            record_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

        if hasattr(log_record, "correlation_id"):
            record_dict["correlation_id"] = log_record.correlation_id
        elif "correlation_id" in message_dict:
            record_dict["correlation_id"] = message_dict["correlation_id"]

        record_dict["environment"] = getattr(log_record, "environment", _environment)

        for key, value in list(record_dict.items()):
            if isinstance(value, str) and _is_secret_key(key):
                record_dict[key] = "***REDACTED***"


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: Environment name for log context
    """
    global _environment
    _environment = environment

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    formatter = CustomJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        logging.Logger: Configured logger instance
    """
    return logging.getLogger(name)


def get_context_logger(name: str, correlation_id: str | None = None) -> logging.Logger:
    """
    Get a logger with correlation ID attached to every record.

    Args:
        name: Logger name
        correlation_id: Run or request correlation ID

    Returns:
        logging.Logger: Logger with correlation_id in extra
    """
    logger = get_logger(name)
    if correlation_id:
        logger = _MergingAdapter(logger, {"correlation_id": correlation_id})
    return logger


class _MergingAdapter(logging.LoggerAdapter):
    """LoggerAdapter that keeps per-call ``extra`` instead of replacing it."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

