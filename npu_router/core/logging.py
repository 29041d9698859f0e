"""
npu-router :: Structured Logging

Human-readable logs for the console, JSON for files and production.
Every record can carry a request id plus routing context (intent, model),
so a single utterance can be followed from detection to eviction.

INL - 2025
"""

import logging
import json
import time
import sys
import uuid
from typing import Optional, Dict, Any

ROOT_LOGGER = "npu_router"

_CONTEXT_FIELDS = ("request_id", "intent", "model")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class HumanFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        reset = self.RESET if self.use_color else ""
        ts = self.formatTime(record, "%H:%M:%S")
        msg = f"{color}{ts} [{record.levelname:>7}]{reset} {record.getMessage()}"
        tags = [
            f"{field[:3] if field == 'request_id' else field}={getattr(record, field)}"
            for field in _CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        ]
        if tags:
            msg += " [" + " ".join(tags) + "]"
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for npu-router.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format on the console
        log_file: Optional file path, always written as JSON
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    if json_output:
        formatter = JSONFormatter()
    else:
        formatter = HumanFormatter(use_color=sys.stderr.isatty())

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger under the npu_router hierarchy."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestLogger:
    """
    Request-scoped logger.

    Carries the request id and, once known, the detected intent and the
    target model on every record it emits.
    """

    def __init__(self, request_id: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.request_id = request_id or new_request_id()
        self.logger = logger or get_logger()
        self.context: Dict[str, Any] = {}
        self.start_time = time.perf_counter()

    def bind(self, **context) -> "RequestLogger":
        """Attach routing context (intent=..., model=...)."""
        self.context.update({k: v for k, v in context.items() if v is not None})
        return self

    def _extra(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        extra = {"request_id": self.request_id, "extra_data": kwargs}
        extra.update(self.context)
        return extra

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra=self._extra(kwargs))

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra=self._extra(kwargs))

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra=self._extra(kwargs))

    def error(self, msg: str, exc_info: bool = False, **kwargs):
        self.logger.error(msg, exc_info=exc_info, extra=self._extra(kwargs))

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
