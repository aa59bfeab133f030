"""
Logging for Senja Sync.

All package loggers hang off ``senja_sync``. Console output goes to
stderr so CLI tables on stdout stay clean; an optional rotating file
gets the same records with logger names. Records logged with
``extra={"collection": ...}`` carry the collection into every format.
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


console = Console(stderr=True)

logger = logging.getLogger("senja_sync")

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class CollectionFilter(logging.Filter):
    """Give every record a ``collection_tag`` so plain formats can show it."""

    def filter(self, record: logging.LogRecord) -> bool:
        collection = getattr(record, "collection", None)
        record.collection_tag = f"[{collection}] " if collection else ""
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        collection = getattr(record, "collection", None)
        if collection is not None:
            entry["collection"] = str(collection)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _console_handler(format_style: str) -> logging.Handler:
    if format_style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(collection_tag)s%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(collection_tag)s%(message)s",
                datefmt=DATE_FORMAT,
            )
        )
    return handler


def _file_handler(log_file: Path | str, max_file_size_mb: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        path,
        maxBytes=max_file_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(collection_tag)s%(message)s",
            datefmt=DATE_FORMAT,
        )
    )
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """
    Configure the ``senja_sync`` logger. Safe to call repeatedly.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Also write to this file, rotated by size
        format_style: Console format, "rich", "json" or "simple"
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.setLevel(log_level)

    handlers = [_console_handler(format_style)]
    if log_file:
        handlers.append(_file_handler(log_file, max_file_size_mb, backup_count))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(CollectionFilter())
        logger.addHandler(handler)


def get_logger(name: str = "senja_sync") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
