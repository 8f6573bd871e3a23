"""Logging setup for the API process and the recap job."""

import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
JSON_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


class JsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record for log aggregation in production."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["line"] = record.lineno
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Install a single stream handler on the root logger.

    ``json_format`` switches from the compact text lines used in
    development to structured JSON. Safe to call more than once; earlier
    handlers are replaced.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    formatter: logging.Formatter
    if json_format:
        formatter = JsonFormatter(JSON_FORMAT, datefmt=DATE_FORMAT)
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Logging configured at %s", level.upper(), extra={"json_format": json_format}
    )
