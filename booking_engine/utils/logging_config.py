"""
Logging configuration for the booking engine.
"""

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import get_settings

APP_LOGGER = "booking_engine"

# Third-party loggers and the level they are capped at
LIBRARY_LOG_LEVELS = {
    "uvicorn": "INFO",
    "uvicorn.access": "INFO",
    "fastapi": "INFO",
    "celery": "INFO",
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "redis": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
}

# Attributes every LogRecord carries; anything else arrived through ``extra``
RESERVED_RECORD_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'message', 'exc_info',
    'exc_text', 'stack_info', 'request_id', 'asctime',
})


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    enable_json_logging: Optional[bool] = None,
) -> None:
    """
    Configure logging for the API process and Celery workers.

    Arguments default to the values in settings; JSON output is used in
    production unless explicitly disabled.
    """
    settings = get_settings()
    log_level = (log_level or settings.log_level).upper()
    log_file = log_file or settings.log_file
    if enable_json_logging is None:
        enable_json_logging = settings.log_format == "json" or settings.is_production

    formatter = "json" if enable_json_logging else "detailed"
    handlers = ["console"]

    config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d "
                    "[%(request_id)s] %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "booking_engine.utils.logging_config.JSONFormatter",
            }
        },
        "filters": {
            "request_id": {
                "()": "booking_engine.utils.logging_config.RequestIDFilter"
            },
            "sensitive_data": {
                "()": "booking_engine.utils.logging_config.SensitiveDataFilter"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout,
                "filters": ["request_id", "sensitive_data"]
            }
        },
        "loggers": {},
        "root": {"level": log_level, "handlers": handlers},
    }

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": formatter,
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "filters": ["request_id", "sensitive_data"]
        }
        handlers.append("file")

        if settings.is_production:
            config["handlers"]["error_file"] = {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": formatter,
                "filename": log_file.replace(".log", "_errors.log"),
                "maxBytes": 10 * 1024 * 1024,
                "backupCount": 10,
                "filters": ["request_id", "sensitive_data"]
            }

    app_handlers = list(handlers)
    if "error_file" in config["handlers"]:
        app_handlers.append("error_file")

    config["loggers"][APP_LOGGER] = {
        "level": log_level,
        "handlers": app_handlers,
        "propagate": False,
    }
    for name, level in LIBRARY_LOG_LEVELS.items():
        config["loggers"][name] = {
            "level": level,
            "handlers": list(handlers),
            "propagate": False,
        }

    logging.config.dictConfig(config)


class RequestIDFilter(logging.Filter):
    """Filter to add request ID to log records."""

    def filter(self, record):
        if not getattr(record, 'request_id', None):
            from ..middleware.logging import request_id_var
            record.request_id = request_id_var.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask credentials and signatures in log messages and extra fields."""

    SENSITIVE_KEYS = {
        'password', 'token', 'secret', 'authorization', 'cookie',
        'api_key', 'access_token', 'signature', 'x-webhook-signature',
        'x-client-secret', 'x-cron-key', 'cron_secret', 'smtp_password',
    }

    TOKEN_PATTERN = re.compile(r'\b[A-Za-z0-9_\-]{40,}\b')

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = self.TOKEN_PATTERN.sub('***MASKED***', record.msg)

        for key, value in list(record.__dict__.items()):
            if key in RESERVED_RECORD_ATTRS:
                continue
            if key.lower() in self.SENSITIVE_KEYS:
                setattr(record, key, '***MASKED***')
            elif isinstance(value, dict):
                setattr(record, key, self._sanitize_data(value))

        return True

    def _sanitize_data(self, data):
        """Recursively mask values stored under sensitive keys."""
        if isinstance(data, dict):
            return {
                key: '***MASKED***' if str(key).lower() in self.SENSITIVE_KEYS
                else self._sanitize_data(value)
                for key, value in data.items()
            }
        if isinstance(data, (list, tuple)):
            return type(data)(self._sanitize_data(item) for item in data)
        return data


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "request_id": getattr(record, "request_id", None),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in RESERVED_RECORD_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def log_performance(operation_name: str, duration: float, **kwargs):
    """Log how long a background operation took."""
    logging.getLogger(f"{APP_LOGGER}.performance").info(
        f"Performance: {operation_name} completed in {duration:.4f}s",
        extra={
            "operation": operation_name,
            "duration": duration,
            "performance_metric": True,
            **kwargs
        }
    )


def log_business_event(event_type: str, details: Dict[str, Any], user_id: Optional[str] = None):
    """Log booking lifecycle events for auditing."""
    logging.getLogger(f"{APP_LOGGER}.business").info(
        f"Business event: {event_type}",
        extra={
            "event_type": event_type,
            "business_event": True,
            "user_id": user_id,
            **details
        }
    )


def log_security_event(event_type: str, details: Dict[str, Any], severity: str = "WARNING"):
    """Log security-related events."""
    logger = logging.getLogger(f"{APP_LOGGER}.security")

    log_method = getattr(logger, severity.lower(), logger.warning)
    log_method(
        f"Security event: {event_type}",
        extra={
            "event_type": event_type,
            "security_event": True,
            "severity": severity,
            **details
        }
    )
