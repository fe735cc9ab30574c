"""Logging setup for docshelf: JSON or console output plus bound context."""

from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

# Libraries that log too much at INFO
_NOISY_LOGGERS = ("aiohttp", "apscheduler", "asyncio", "sentence_transformers")


def _context_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields merged at the top level."""

    def __init__(self, service_name: str = "docshelf"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_context_fields(record))
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """``time | LEVEL | logger | message | k=v ...`` for terminals."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, self.datefmt), f"{record.levelname:8}", record.name, record.getMessage()]
        context = _context_fields(record)
        if context:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(context.items())))
        line = " | ".join(parts)

        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if color:
            line = f"{color}{line}{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", service_name: str = "docshelf", log_file: Optional[str] = None,
                  use_json: bool = False, use_colors: bool = True) -> None:
    """Configure the root logger.

    Console output is JSON when ``use_json`` is set, otherwise the coloured
    line format (colours only on a TTY). ``log_file`` adds a JSON file handler.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter(service_name) if use_json
                         else ColoredFormatter(use_colors and sys.stderr.isatty()))
    handlers = [console]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter(service_name))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StructuredLogger:
    """Logger facade that sends a fixed context with every record as ``extra``."""

    def __init__(self, name: str, **default_context):
        self.logger = logging.getLogger(name)
        self.default_context = default_context

    def bind(self, **context) -> 'StructuredLogger':
        return StructuredLogger(self.logger.name, **{**self.default_context, **context})

    def _log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        self.logger.log(level, message, extra={**self.default_context, **context}, exc_info=exc_info)

    def debug(self, message: str, **context) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        """ERROR with the active exception attached."""
        self._log(logging.ERROR, message, exc_info=True, **context)


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)
