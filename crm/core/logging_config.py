# -*- coding: utf-8 -*-
"""
Process-wide logging setup.

Routing by severity so the platform classifies lines correctly:
- DEBUG..WARNING -> STDOUT
- ERROR, CRITICAL -> STDERR

Records go through a QueueHandler; a QueueListener thread does the actual
stream writes so the event loop never blocks on stdout/stderr.
"""

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# uvicorn installs its own handlers; route them through root instead
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class MaxLevelFilter(logging.Filter):
    """Pass records up to max_level (inclusive)."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


_log_listener: Optional[QueueListener] = None


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Optional[str] = None) -> None:
    """
    Install the queue-based root handler. Call once, before any logging.

    Args:
        level: Root level name; defaults to LOG_LEVEL env var, then INFO
    """
    global _log_listener

    if _log_listener is not None:
        return

    root_logger = logging.getLogger()
    root_level = _resolve_level(level)
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(root_level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue()
    root_logger.addHandler(QueueHandler(log_queue))

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(stop_logging)


def stop_logging() -> None:
    """Flush and stop the listener thread. Safe to call twice."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
