"""Logging for rovosession.

Everything logs under the ``rovosession`` logger (children: ``config``,
``events``, ``session``, ``client``). Two extra levels sit between the
standard ones:

    TRACE (5)     every decoded frame and every dispatched item
    VERBOSE (15)  state transitions and permission decisions

Output goes to ``logging.file`` or ``$ROVOSESSION_LOG`` when set, otherwise
to stderr, but only when stderr is a terminal. An editor extension that
owns our stderr pipe gets no log noise.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rovosession.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

LOG_ENV_VAR = "ROVOSESSION_LOG"

logger = logging.getLogger("rovosession")

_NAMED_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# -v count: 0 errors only ... 4 everything
_VERBOSITY_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_initialized = False


class _LowercaseLevelFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Effective level for a LoggingConfig.

    ``verbose`` wins over ``level``. Unknown names mean INFO; verbosity
    past 4 is TRACE and below 0 is ERROR.
    """
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        index = min(max(config.verbose, 0), len(_VERBOSITY_LEVELS) - 1)
        return _VERBOSITY_LEVELS[index]
    if config.level:
        return _NAMED_LEVELS.get(config.level.strip().upper(), logging.INFO)
    return logging.INFO


def _log_file(config: LoggingConfig | None) -> str | None:
    path = (config.file if config else None) or os.environ.get(LOG_ENV_VAR)
    return os.path.expanduser(path) if path else None


def _open_handler(config: LoggingConfig | None) -> logging.Handler | None:
    path = _log_file(config)
    if path:
        try:
            return logging.FileHandler(path, mode="a", encoding="utf-8")
        except OSError as e:
            if not sys.stderr.isatty():
                return None
            print(f"[rovosession] Cannot open log file {path}: {e}", file=sys.stderr)
    if sys.stderr.isatty():
        return logging.StreamHandler(sys.stderr)
    return None


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Install the rovosession handler. Only the first call has an effect."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = resolve_level(config)
    logger.setLevel(level)

    handler = _open_handler(config)
    if handler is None:
        return
    handler.setLevel(level)
    handler.setFormatter(_LowercaseLevelFormatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)


def reset_logging() -> None:
    """Remove installed handlers so setup_logging() can run again."""
    global _initialized
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    _initialized = False


def get_logger(name: str | None = None) -> logging.Logger:
    """The rovosession logger, or its child ``rovosession.<name>``."""
    return logger.getChild(name) if name else logger
