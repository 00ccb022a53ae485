"""
Logging configuration for quorumgate.

Structured JSON logging so authorization decisions and security events
can be shipped to a log aggregator as-is.
"""

import json
import logging
import sys
import time
from typing import Optional

from quorumgate import config


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields attached via `extra={"extra_fields": {...}}`
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None,
    logger_name: str = "quorumgate",
) -> logging.Logger:
    """
    Configure the quorumgate logger hierarchy.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to QUORUMGATE_LOG_LEVEL.
        json_format: Use StructuredFormatter instead of plain text.
            Defaults to QUORUMGATE_LOG_JSON.
        log_file: Optional file to mirror output into. Defaults to
            QUORUMGATE_LOG_FILE (empty means console only).
        logger_name: Root of the hierarchy to configure.

    Returns:
        The configured logger.
    """
    if level is None:
        level = config.LOG_LEVEL
    if json_format is None:
        json_format = config.LOG_JSON
    if log_file is None:
        log_file = config.LOG_FILE or None

    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
