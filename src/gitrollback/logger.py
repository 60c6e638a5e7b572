"""Logging setup for git-rollback.

Library modules only call get_logger(); configure_logging() is called once
by the CLI to route records to a JSON-lines file and the terminal.
"""

from __future__ import annotations

import functools
import logging
import socket
import sys
from enum import IntEnum
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

__all__ = [
    "LogLevel",
    "configure_logging",
    "get_logger",
    "parse_log_level",
    "session_log_path",
]


class LogLevel(IntEnum):
    """Log thresholds accepted in the configuration file.

    FULL sits between DEBUG and INFO and is the default log file threshold.
    """

    DEBUG = logging.DEBUG
    FULL = logging.DEBUG + 5
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


logging.addLevelName(LogLevel.FULL, "FULL")


def parse_log_level(value: str) -> LogLevel:
    """Parse a log level name (case-insensitive).

    Raises:
        ValueError: If the name is not a known level
    """
    try:
        return LogLevel[value.upper()]
    except KeyError as e:
        valid_levels = ", ".join(level.name for level in LogLevel)
        raise ValueError(f"Invalid log level: {value}. Valid levels: {valid_levels}") from e


def _add_hostname(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every record with the machine that ran the rollback."""
    event_dict.setdefault("hostname", _hostname())
    return event_dict


@functools.cache
def _hostname() -> str:
    return socket.gethostname()


def _formatted(handler: logging.Handler, level: LogLevel, renderer: Any, pre_chain: list[Any]) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain))
    return handler


def configure_logging(
    log_file_level: LogLevel,
    log_cli_level: LogLevel,
    log_file_path: Path | None = None,
) -> None:
    """Route structlog and stdlib records to stderr and, optionally, a JSON-lines file.

    Args:
        log_file_level: Minimum level written to the log file
        log_cli_level: Minimum level shown on the terminal
        log_file_path: Log file; file output is skipped when None
    """
    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_hostname,
        structlog.processors.StackInfoRenderer(),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [
        _formatted(
            logging.StreamHandler(sys.stderr),
            log_cli_level,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            pre_chain,
        )
    ]
    if log_file_path is not None:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _formatted(
                logging.FileHandler(log_file_path, encoding="utf-8"),
                log_file_level,
                structlog.processors.JSONRenderer(),
                pre_chain,
            )
        )

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(min(h.level for h in handlers))


def get_logger(name: str, **context: Any) -> Any:
    """Get a structlog logger with bound context.

    Args:
        name: Logger name (typically the module's __name__)
        **context: Context to bind (e.g., session_id)
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def session_log_path(state_dir: Path, session_label: str) -> Path:
    """Log file for one CLI invocation: <state_dir>/logs/rollback-<label>.log."""
    return state_dir / "logs" / f"rollback-{session_label}.log"
