"""
Structured logging for eventchain.

Every module logs through a named logger under ``eventchain``. Components pass
correlation fields as ``extra={"structured": {...}}``; the JSON formatter merges
them into the emitted line.

Usage:
    from eventchain.log import configure_logging

    configure_logging(level="DEBUG")
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import msgspec

ROOT_LOGGER = "eventchain"


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        structured = getattr(record, "structured", None)
        if structured:
            entry.update(structured)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])
        return msgspec.json.encode(entry, enc_hook=str).decode("utf-8")


def configure_logging(level: str = "INFO", stream: Any = None, json_output: bool = True) -> logging.Logger:
    """
    Configure the ``eventchain`` logger.

    :param level: DEBUG, INFO, WARNING or ERROR
    :type level: str
    :param stream: Output stream (default: sys.stderr)
    :type stream: Any
    :param json_output: Emit JSON lines; plain text otherwise
    :type json_output: bool
    :returns: The configured ``eventchain`` logger
    :rtype: logging.Logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
