"""Logging for deployctl.

All modules log through ``StructuredLogger``, which renders keyword context
as ``message [key=value ...]`` so a run's log lines can be grepped by
target, phase or revision.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "deployctl"

# Third-party loggers that are only interesting when something breaks
_NOISY_LOGGERS = ("paramiko", "paramiko.transport", "httpx", "httpcore", "urllib3")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value.upper())


def _handler(rich_output: bool) -> logging.Handler:
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    return handler


def setup_logging(level: LogLevel = LogLevel.INFO, rich_output: bool = True) -> logging.Logger:
    """Install a single stderr handler on the root logger.

    Calling it again replaces the previous handler, so the CLI can reconfigure
    once flags and config are known.

    Args:
        level: Level for deployctl loggers
        rich_output: RichHandler when True, plain timestamped lines otherwise

    Returns:
        The ``deployctl`` logger
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(_handler(rich_output))
    root.setLevel(level.numeric)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.numeric)
    return logger


def get_logger(name: str) -> "StructuredLogger":
    """Structured logger for a module, usually called with ``__name__``."""
    return StructuredLogger(name)


class StructuredLogger:
    """Logger that appends bound and per-call context to every message."""

    def __init__(self, name: str, context: dict[str, Any] | None = None):
        if not name.startswith(f"{ROOT_LOGGER}.") and name != ROOT_LOGGER:
            name = f"{ROOT_LOGGER}.{name}"
        self._logger = logging.getLogger(name)
        self._context = context or {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **context: Any) -> "StructuredLogger":
        """A logger carrying extra context on every line, e.g. the target name."""
        return StructuredLogger(self.name, {**self._context, **context})

    def _render(self, message: str, context: dict[str, Any]) -> str:
        merged = {**self._context, **context}
        pairs = " ".join(f"{key}={value}" for key, value in merged.items() if value is not None)
        return f"{message} [{pairs}]" if pairs else message

    def log(self, level: int, message: str, **context: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._render(message, context))

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log(logging.ERROR, message, **context)
