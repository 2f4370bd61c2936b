"""Logger factory shared by the extension background context and the backend.

One handler is attached to the root logger the first time a module asks for a
logger.  ``SHOPSAVR_LOG_FILE`` adds a file handler next to the stream handler
so the extension process keeps a local trail of dropped and dead-lettered
events.
"""

from __future__ import annotations

import logging
import os
from typing import Final

_HANDLERS_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATEFMT: Final[str] = "%Y-%m-%d %H:%M:%S"


def _resolve_level() -> int:
    level_name = os.getenv("SHOPSAVR_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def _build_handlers() -> list[logging.Handler]:
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file := os.getenv("SHOPSAVR_LOG_FILE"):
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; handlers are attached once per process."""
    global _HANDLERS_ATTACHED

    level = _resolve_level()
    root = logging.getLogger()

    if not _HANDLERS_ATTACHED:
        for handler in _build_handlers():
            root.addHandler(handler)
        _HANDLERS_ATTACHED = True
    root.setLevel(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
