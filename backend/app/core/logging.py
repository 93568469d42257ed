# backend/app/core/logging.py
"""Logging setup and helpers shared by every module."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import Settings

SECURITY_LOGGER_NAME = "zerolock.security"

_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class StructuredJSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for key, value in context.items():
                if key in log_record:
                    log_record[f"context_{key}"] = value
                else:
                    log_record[key] = value

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def configure_logging(settings: Settings) -> None:
    """Install a single root handler according to the settings."""
    handler = logging.StreamHandler()
    if settings.LOG_JSON or settings.is_production:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.LOG_LEVEL.upper())

    # SQL echo is controlled by DATABASE_ECHO, keep the engine logger quiet otherwise
    if not settings.DATABASE_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def log_security_event(logger: logging.Logger, event: str, **context: Any) -> None:
    """
    Emit a security-relevant event to the process log.

    The persisted audit trail lives in the security_logs table; this is the
    operator-facing stream. Context must never contain secrets.
    """
    message = f"SECURITY EVENT: {event}"
    if context:
        message += " | " + ", ".join(f"{k}: {v}" for k, v in context.items())
        logger.warning(message, extra={"context": context})
    else:
        logger.warning(message)
