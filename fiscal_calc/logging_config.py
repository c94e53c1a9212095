"""
Logging configuration.

Console output for development, JSON lines for log aggregation.

Environment variables:
- LOG_FORMAT: "json" or "console" (default: console)
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
"""
import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from typing import Optional

_STANDARD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "exc_info", "exc_text", "stack_info",
    "message", "taskName",
}


def get_logging_config(level: Optional[str] = None, log_format: Optional[str] = None) -> dict:
    """
    Build a dictConfig mapping for the application loggers.

    Args:
        level: Log level; falls back to LOG_LEVEL
        log_format: "json" or "console"; falls back to LOG_FORMAT

    Returns:
        logging.config.dictConfig mapping
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.environ.get("LOG_FORMAT", "console")).lower()

    if log_format == "json":
        formatters = {"default": {"()": "fiscal_calc.logging_config.JsonFormatter"}}
    else:
        formatters = {
            "default": {
                "format": "[{asctime}] {levelname} {name} {message}",
                "style": "{",
            },
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "fiscal_calc": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "fiscal_calc_web": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "handlers": ["console"],
                "level": "WARNING",
                "propagate": False,
            },
        },
    }


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    logging.config.dictConfig(get_logging_config(level, log_format))


class JsonFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs one JSON object per line with timestamp, level, logger, message,
    exception text when present and any extra fields passed to the logger.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extras = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS:
                continue
            try:
                json.dumps(value)
                extras[key] = value
            except (TypeError, ValueError):
                extras[key] = str(value)
        if extras:
            log_entry["extra"] = extras

        return json.dumps(log_entry, default=str)
