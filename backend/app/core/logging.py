"""Email Insight Logging Configuration."""

import json
import logging
import sys
from typing import Literal

# Human-readable format for development
DEV_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Extra record attributes copied into structured output when present
_STRUCTURED_EXTRAS = ("request_id", "error_code", "severity", "path", "principal_id", "tier")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, built with json.dumps so every field is escaped."""

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in _STRUCTURED_EXTRAS:
            value = getattr(record, attr, None)
            if value is not None:
                log_entry[attr] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format - 'structured' for JSON, 'dev' for readable
    """
    if format_type == "structured":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logging.root.handlers = [handler]
        logging.root.setLevel(getattr(logging, level.upper()))
    else:
        logging.basicConfig(
            level=getattr(logging, level.upper()),
            format=DEV_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S",
            stream=sys.stdout,
            force=True,
        )

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    )

    logger = logging.getLogger("insight")
    logger.info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the insight prefix."""
    return logging.getLogger(f"insight.{name}")


def request_extra(request, **fields) -> dict:
    """Log ``extra`` carrying the request's id alongside ``fields``.

    ``request`` is anything with a Starlette ``state``; the id is absent
    when RequestIDMiddleware did not run.
    """
    return {"request_id": getattr(request.state, "request_id", None), **fields}
