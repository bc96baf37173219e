"""Structured logging with structlog.

Library modules log through ``get_logger(__name__)`` with key/value pairs.
Events go through the standard ``logging`` machinery, so ``setup_logging``
decides where they end up: a human-readable handler and a JSON-lines handler,
each with its own level and destination.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import List, Optional

import structlog

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# File names that select a standard stream (or nothing) instead of a file
_NULL_FILES = ("", "/dev/null")
_STDOUT_FILES = ("-", "/dev/stdout")
_STDERR_FILES = ("/dev/stderr",)


def _add_pid(logger, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("pid", os.getpid())
    return event_dict


# Shared by structlog events and plain stdlib records (see ``trace``)
_PRE_CHAIN = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    _add_pid,
]


def _configure() -> None:
    structlog.configure(
        processors=[structlog.stdlib.filter_by_level]
        + _PRE_CHAIN
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    if not structlog.is_configured():
        _configure()
    return structlog.get_logger(name)


def trace(name: str, event: str, **kw) -> None:
    """Log ``event`` at TRACE, below DEBUG.

    structlog's bound loggers only know the standard level names, so TRACE
    events are emitted as plain records; the formatters pick ``kw`` back up
    from the record.
    """
    std = logging.getLogger(name)
    if std.isEnabledFor(TRACE):
        std.log(TRACE, event, extra=kw)


def parse_level(name: str) -> int:
    """Map a level name (TRACE, DEBUG, INFO, WARN/WARNING, ERROR) to its number."""
    key = name.strip().upper()
    if key == "WARN":
        key = "WARNING"
    level = logging.getLevelName(key)
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {name}")
    return level


def human_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN + [structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )


def json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN + [structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
    )


def _handler_for(path: str) -> Optional[logging.Handler]:
    if path in _NULL_FILES:
        return None
    if path in _STDOUT_FILES:
        return logging.StreamHandler(sys.stdout)
    if path in _STDERR_FILES:
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(path, mode="a", encoding="utf-8")


def setup_logging(
    level: str = "INFO",
    log_file: str = "/dev/stderr",
    json_level: str = "INFO",
    json_log_file: str = "/dev/null",
) -> List[logging.Handler]:
    """Install the human and JSON handlers on the ``sitepkg`` logger.

    Returns the installed handlers; previously installed sitepkg handlers are
    removed and closed first, so calling this twice does not duplicate output.
    """
    if not structlog.is_configured():
        _configure()
    root = logging.getLogger("sitepkg")
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    handlers: List[logging.Handler] = []
    for path, lvl, formatter in (
        (log_file, level, human_formatter()),
        (json_log_file, json_level, json_formatter()),
    ):
        numeric = parse_level(lvl)
        h = _handler_for(path)
        if h is None:
            continue
        h.setLevel(numeric)
        h.setFormatter(formatter)
        root.addHandler(h)
        handlers.append(h)

    levels = [h.level for h in handlers]
    root.setLevel(min(levels) if levels else logging.WARNING)
    root.propagate = False
    get_logger("sitepkg.log").debug("hello")
    return handlers
