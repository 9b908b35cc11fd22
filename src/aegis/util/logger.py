"""
Logging for Aegis.

Every module asks for its logger through :func:`get_logger`. Each logger
writes to the console through prompt_toolkit (colored when attached to a
terminal) and to one rotating log file per process under ``./logs``.

The console level defaults to INFO and can be changed with the
``AEGIS_LOG_LEVEL`` environment variable; the file always receives DEBUG.
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from prompt_toolkit import print_formatted_text
from prompt_toolkit.formatted_text import ANSI

LOGS_DIR: Path = Path("./logs").resolve()

LOG_FORMAT: str = "[%(asctime)s] [%(levelname)s] [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
DATE_FORMAT: str = "%Y-%m-%d %H-%M-%S"

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[38;5;88m",
}
RESET_COLOR = "\033[0m"

MAX_LOG_BYTES: int = 5 * 1024 * 1024
LOG_BACKUP_COUNT: int = 3

NOISY_LOGGERS = (
    "discord",
    "discord.gateway",
    "discord.client",
    "discord.http",
    "aiosqlite",
    "asyncio",
    "websockets",
    "aiohttp",
)

_session_log_file: Path | None = None
_console_handlers: list[logging.Handler] = []


class ColorFormatter(logging.Formatter):
    """Formatter that colors the whole line by record level."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}{RESET_COLOR}" if color else line


class PromptToolkitHandler(logging.Handler):
    """Console handler printing through prompt_toolkit so prompts are not torn."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_formatted_text(ANSI(self.format(record)))
        except Exception:
            self.handleError(record)


def console_level() -> int:
    """Console level from ``AEGIS_LOG_LEVEL`` (a level name), INFO by default."""
    name = os.getenv("AEGIS_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _console_formatter() -> logging.Formatter:
    try:
        colored = sys.stderr.isatty()
    except Exception:
        colored = False
    formatter_cls = ColorFormatter if colored else logging.Formatter
    return formatter_cls(LOG_FORMAT, datefmt=DATE_FORMAT)


def session_log_file() -> Path:
    """Path of this process's log file; created on first use and reused afterwards."""
    global _session_log_file

    if _session_log_file is None:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        _session_log_file = LOGS_DIR / f"{datetime.now().strftime(DATE_FORMAT)}.log"
    return _session_log_file


def get_logger(logger_name: str) -> logging.Logger:
    """Return the named logger, attaching the Aegis handlers the first time.

    Parameters
    ----------
    logger_name:
        Short component name, e.g. ``"timer_registry"``.

    Returns
    -------
    logging.Logger
        Logger that does not propagate to the root logger.
    """
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console = PromptToolkitHandler()
    console.setFormatter(_console_formatter())
    console.setLevel(console_level())
    logger.addHandler(console)
    _console_handlers.append(console)

    file_handler = RotatingFileHandler(
        session_log_file(),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(file_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change the console level of every logger created so far."""
    for handler in _console_handlers:
        handler.setLevel(level)


def handle_exception(exception_type, exception_instance, exception_traceback) -> None:
    """``sys.excepthook`` replacement; KeyboardInterrupt keeps its default behavior."""
    if issubclass(exception_type, KeyboardInterrupt):
        sys.__excepthook__(exception_type, exception_instance, exception_traceback)
        return
    get_logger("aegis").critical(
        "Uncaught exception", exc_info=(exception_type, exception_instance, exception_traceback)
    )


def silence_noisy_loggers() -> None:
    for name in NOISY_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.ERROR)
        noisy.propagate = False
        noisy.handlers = []


silence_noisy_loggers()
