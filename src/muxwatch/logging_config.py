"""
Logging setup for muxwatch.

All loggers live under the "muxwatch" namespace. The server logs to a
rich console plus a file under the state directory; CLI commands only
surface warnings.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from .settings import get_log_dir


ROOT_LOGGER = "muxwatch"
DEFAULT_LOG_DIR = get_log_dir()

_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the muxwatch namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
    rich_console: bool = False,
) -> logging.Logger:
    """Configure the muxwatch root logger.

    Existing handlers are removed first so repeated calls don't stack
    duplicate output.

    Args:
        level: Log level for the muxwatch namespace
        log_file: Optional file to append records to
        console: Whether to log to stderr
        rich_console: Use rich's RichHandler for console output
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    if console:
        if rich_console:
            handler: logging.Handler = RichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
        else:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        logger.addHandler(handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def setup_server_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Logging for the long-running server: rich console + log file."""
    if log_file is None:
        log_file = DEFAULT_LOG_DIR / "server.log"
    setup_logging(level=level, log_file=log_file, console=True, rich_console=True)
    return get_logger("server")


def setup_cli_logging() -> logging.Logger:
    """Quiet logging for one-shot CLI commands."""
    setup_logging(level=logging.WARNING, console=True)
    return get_logger("cli")


class StructuredLogger:
    """Logger wrapper that appends key=value context to every message.

    Example:
        log = get_structured_logger("broadcast").with_context(component="terminal")
        log.warning("Dropped slow client", target="main:0.0")
        # -> "Dropped slow client component=terminal target=main:0.0"
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        self._logger = logger
        self._context: Dict[str, Any] = dict(context or {})

    def with_context(self, **kwargs: Any) -> "StructuredLogger":
        merged = dict(self._context)
        merged.update(kwargs)
        return StructuredLogger(self._logger, merged)

    def _format(self, msg: str, kwargs: Dict[str, Any]) -> str:
        fields = dict(self._context)
        fields.update(kwargs)
        if not fields:
            return msg
        pairs = " ".join(f"{k}={v}" for k, v in fields.items())
        return f"{msg} {pairs}"

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._logger.debug(self._format(msg, kwargs))

    def info(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(self._format(msg, kwargs))

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(self._format(msg, kwargs))

    def error(self, msg: str, **kwargs: Any) -> None:
        self._logger.error(self._format(msg, kwargs))

    def exception(self, msg: str, **kwargs: Any) -> None:
        self._logger.exception(self._format(msg, kwargs))


def get_structured_logger(name: str) -> StructuredLogger:
    return StructuredLogger(get_logger(name))
