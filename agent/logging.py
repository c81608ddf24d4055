"""
Logging configuration for Spinel Compare.

Two destinations:
  - Console: DEBUG if --verbose, WARNING+ otherwise
  - File: always DEBUG, attached by ``attach_log_file()``
  - Format: "timestamp | level | name | session_id | mode | tag | message"
  - Config console_format options:
    - "full"   - (default) same structured format as the file handler
    - "simple" - bare messages for DEBUG/INFO, [LEVEL] prefix for WARNING+
    - "clean"  - no console output at all (file logging still active)

Both panels of a comparison run concurrently on one event loop, so the
session id and mode come from context variables set per request task
rather than from logger state.

Log files are stored in ~/.spinel/logs/.
"""

import contextvars
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import get_data_dir


# Log directory
LOG_DIR = get_data_dir() / "logs"

LOGGER_NAME = "spinel"

_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(session_id)s | %(mode)s "
    "| %(log_tag)s | %(message)s"
)

_session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "spinel_session_id", default=""
)
_mode_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "spinel_mode", default=""
)


def tagged(tag: str) -> dict:
    """Return ``extra`` dict for logger calls: ``logger.debug("...", extra=tagged("x"))``."""
    return {"log_tag": tag}


def set_request_context(session_id: str, mode: str) -> None:
    """Stamp records logged from the current task with *session_id* and *mode*.

    Every asyncio task runs in its own copy of the context, so concurrent
    requests never see each other's values and nothing needs resetting.
    """
    _session_id_var.set(session_id)
    _mode_var.set(mode)


# Module-level state (shared across re-inits)
_request_filter: Optional["_RequestContextFilter"] = None


class _RequestContextFilter(logging.Filter):
    """Injects session_id, mode and log_tag into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id_var.get() or "-"
        record.mode = _mode_var.get() or "-"
        if not hasattr(record, "log_tag"):
            record.log_tag = ""
        return True


class _ConsoleFormatter(logging.Formatter):
    """Console formatter: shows [LEVEL] prefix only for WARNING and above."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        if getattr(record, "mode", "-") != "-":
            prefix = f"[{record.mode}] "
        if record.levelno >= logging.WARNING:
            return f"  [{record.levelname}] {prefix}{record.getMessage()}"
        return f"  {prefix}{record.getMessage()}"


def _context_filter() -> "_RequestContextFilter":
    global _request_filter
    if _request_filter is None:
        _request_filter = _RequestContextFilter()
    return _request_filter


def attach_log_file(name: str = "server") -> Path:
    """Attach a DEBUG file handler writing to ``{name}_{YYYYMMDD}.log``.

    Replaces any file handler attached earlier. Returns the log file path.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    log_file = LOG_DIR / f"{name}_{datetime.now().strftime('%Y%m%d')}.log"

    logger = logging.getLogger(LOGGER_NAME)
    for h in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(h)
        h.close()

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    # Records from child loggers skip logger-level filters
    file_handler.addFilter(_context_filter())
    logger.addHandler(file_handler)

    logger.info("=" * 60)
    logger.info(f"Logging started at {datetime.now().isoformat()}")
    logger.info(f"Log file: {log_file}")
    return log_file


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure console logging for the server.

    File handlers are attached separately by ``attach_log_file()``.

    Args:
        verbose: If True, show DEBUG level on console; otherwise WARNING+.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level

    # Clear existing console handlers (in case of re-init), keep the file handler
    for h in [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]:
        logger.removeHandler(h)

    import config as _config
    console_format = _config.get("console_format", "full")

    if console_format != "clean":
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        if console_format == "simple":
            console_handler.setFormatter(_ConsoleFormatter())
        else:
            # "full" (default)
            console_handler.setFormatter(
                logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
            )
        console_handler.addFilter(_context_filter())
        logger.addHandler(console_handler)
    # "clean" - no console handler at all

    return logger


def get_logger() -> logging.Logger:
    """Get the agent logger instance.

    Returns:
        The spinel logger (creates with defaults if not configured)
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        return setup_logging(verbose=False)
    return logger
