"""Logging for the poller: readable console lines plus a JSON log file.

The JSON file is what log shippers tail. Records carry whatever context was
bound with ``get_logger`` (retailer slug, candidate id) as top-level keys.
"""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from beacon.config import settings

SERVICE_NAME = "beacon"
LOG_FILE = "beacon.log"
ERROR_LOG_FILE = "error.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Chatty third-party loggers; httpx alone logs one INFO line per request
QUIET_LOGGERS = ("httpx", "httpcore", "playwright", "apscheduler.executors.default")


class PollerJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, stamped with service and call site."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["ts"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = SERVICE_NAME
        log_record["where"] = f"{record.module}:{record.lineno}"


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    base_dir: Optional[Union[str, Path]] = None,
    level: Optional[str] = None,
) -> logging.Logger:
    """
    Install the poller's handlers on the root logger.

    Args:
        base_dir: Directory that gets a ``logs/`` folder (default: cwd)
        level: Root level name; defaults to ``settings.log_level``

    Returns:
        The configured root logger
    """
    logs_dir = Path(base_dir or Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    formatter = PollerJsonFormatter("%(message)s")
    root.addHandler(_file_handler(logs_dir / LOG_FILE, logging.DEBUG, formatter))
    root.addHandler(_file_handler(logs_dir / ERROR_LOG_FILE, logging.ERROR, formatter))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class ContextLogger(logging.LoggerAdapter):
    """Adds the bound context to every record; per-call ``extra`` wins on clashes."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLogger:
    """Logger for ``name`` with ``context`` attached to each record."""
    return ContextLogger(logging.getLogger(name), context)
