"""
Logging configuration for lxc-gpu-passthrough.

Console output is tagged with the container being processed; the optional
log file can be written as JSON lines. A SUCCESS level sits between INFO
and WARNING for stage outcomes.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FILE_NAME = "lxc-gpu-passthrough.log"
CONTEXT_FIELDS = ("ctid", "operation")


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, container context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class ContextFormatter(logging.Formatter):
    """Prefixes each line with ``[CT <id>]`` while a container is processed."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",     # Dim
        logging.INFO: "\033[34m",     # Blue
        SUCCESS: "\033[32m",          # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",    # Red
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = False):
        super().__init__(fmt, datefmt)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self.color and record.levelno in self.LEVEL_COLORS:
            record.levelname = f"{self.LEVEL_COLORS[record.levelno]}{levelname}{self.RESET}"
        try:
            text = super().format(record)
        finally:
            record.levelname = levelname

        ctid = getattr(record, "ctid", None)
        return f"[CT {ctid}] {text}" if ctid else text


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
    log_dir: Optional[Path] = None,
):
    """
    Configure logging for lxc-gpu-passthrough.

    Args:
        level: Console logging level (default: INFO)
        log_file: Path to log file (optional)
        json_logs: Use JSON lines for the log file
        log_dir: Directory for log files (creates lxc-gpu-passthrough.log)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if (log_file or log_dir) else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ContextFormatter(
        "%(asctime)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        color=sys.stderr.isatty(),
    ))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_file = Path(log_dir) / LOG_FILE_NAME

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        if json_logs:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(ContextFormatter(
                "%(asctime)s %(levelname)s %(name)s: %(message)s"
            ))
        root_logger.addHandler(file_handler)


class LogContext:
    """
    Tag every record created inside the block with container context.

    Contexts nest; the inner values win and the outer ones come back on exit.

    Example:
        with LogContext(ctid="101", operation="configure"):
            logger.info("Applying passthrough")  # [CT 101] ... Applying passthrough
    """

    def __init__(self, **context):
        self.context = context
        self._previous = None

    def __enter__(self):
        self._previous = logging.getLogRecordFactory()
        previous, context = self._previous, self.context

        def factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            for key, value in context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, *exc):
        logging.setLogRecordFactory(self._previous)
        return False


def log_success(logger: logging.Logger, message: str, *args) -> None:
    """Log a stage outcome at the SUCCESS level."""
    logger.log(SUCCESS, message, *args)
