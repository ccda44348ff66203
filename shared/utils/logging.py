"""
Logging configuration for the Palaver chat service.

Rich console output for local development, one JSON object per line for
deployed environments.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from rich.console import Console
from rich.logging import RichHandler

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime"}

_NOISY_LOGGERS = ("httpx", "httpcore", "groq", "pymongo", "urllib3")


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "text",
    log_output: str = "stdout",
) -> logging.Logger:
    """
    Configure logging for a service.

    Args:
        service_name: Root logger name for the service (e.g., 'api')
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: 'json' for production, 'text' for development
        log_output: 'stdout', 'file', or 'both'

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(service_name)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    if log_output in ("stdout", "both"):
        if log_format == "json":
            handler: logging.Handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JSONFormatter(service_name=service_name))
        else:
            handler = RichHandler(
                console=Console(stderr=False),
                rich_tracebacks=True,
                show_time=True,
                show_path=False,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    if log_output in ("file", "both"):
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{service_name}.log")
        file_handler.setFormatter(JSONFormatter(service_name=service_name))
        logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed with extra={...} land directly on the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class LoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that stamps every message with fixed context.

    Usage:
        turn_logger = LoggerAdapter(logger, {"session_id": session_id})
        turn_logger.info("Turn persisted", extra={"message_count": 4})
    """

    def process(self, msg: str, kwargs: Any) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
