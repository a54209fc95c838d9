"""
Engine logging infrastructure.

Every module logs through ``logging.getLogger(__name__)`` under the
``manifest_back`` logger. ``setup_logging`` attaches:

- a JSONL rotating file handler (``<log_dir>/manifest.log``), one JSON object
  per line with timestamp, level, component, message and structured context
- a human-readable console handler

Component loggers (``get_logger("CRUD")``) tag their records with a
``component`` field so both outputs can be filtered by subsystem.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from manifest_back.runtime.config import EngineSettings

ROOT_LOGGER = "manifest_back"
LOG_FILE_NAME = "manifest.log"
DEFAULT_COMPONENT = "ENGINE"

# =============================================================================
# Terminal Colors (respects NO_COLOR)
# =============================================================================

_NO_COLOR = bool(os.environ.get("NO_COLOR")) or not sys.stdout.isatty()


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "" if _NO_COLOR else "\033[0m"
    DIM = "" if _NO_COLOR else "\033[2m"

    DEBUG = "" if _NO_COLOR else "\033[36m"  # Cyan
    INFO = "" if _NO_COLOR else "\033[32m"  # Green
    WARNING = "" if _NO_COLOR else "\033[33m"  # Yellow
    ERROR = "" if _NO_COLOR else "\033[31m"  # Red
    CRITICAL = "" if _NO_COLOR else "\033[35m"  # Magenta

    SCHEMA = "" if _NO_COLOR else "\033[34m"  # Blue
    CRUD = "" if _NO_COLOR else "\033[36m"  # Cyan
    ENGINE = "" if _NO_COLOR else "\033[35m"  # Magenta


# =============================================================================
# Formatters
# =============================================================================


class JSONLFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines.

    Example output:
    {"timestamp":"2024-01-15T10:30:45.123Z","level":"WARNING","component":"CRUD","message":"Delete blocked","context":{"entity":"Owner","relation":"dogs"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC)
            .replace(tzinfo=None)
            .isoformat()
            + "Z",
            "level": record.levelname,
            "component": getattr(record, "component", DEFAULT_COMPONENT),
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        # Source location for warnings and errors
        if record.levelno >= logging.WARNING:
            source_info: dict[str, Any] = {}
            if record.pathname:
                source_info["file"] = record.pathname
            if record.lineno:
                source_info["line"] = record.lineno
            if record.funcName and record.funcName != "<module>":
                source_info["function"] = record.funcName
            if source_info:
                entry["source"] = source_info

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.INFO: Colors.INFO,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, "component", DEFAULT_COMPONENT)
        component_color = getattr(record, "component_color", Colors.ENGINE)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level_color = self.LEVEL_COLORS.get(record.levelno, "")

        if _NO_COLOR:
            prefix = f"[{timestamp}] [{component}]"
        else:
            prefix = (
                f"{Colors.DIM}{timestamp}{Colors.RESET} "
                f"{component_color}[{component}]{Colors.RESET}"
            )

        if record.levelno != logging.INFO:
            level_name = record.levelname
            if not _NO_COLOR:
                level_name = f"{level_color}{level_name}{Colors.RESET}"
            prefix = f"{prefix} {level_name}:"

        return f"{prefix} {record.getMessage()}"


# =============================================================================
# Logger Setup
# =============================================================================


_loggers: dict[str, logging.Logger] = {}
_log_dir: Path | None = None


def setup_logging(
    log_dir: Path | str = ".manifest/logs",
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """
    Initialize the logging infrastructure.

    Args:
        log_dir: Directory for log files
        level: Minimum log level (number or name)
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
        console: Also log to stdout

    Returns:
        Path to the log directory
    """
    global _log_dir

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    _log_dir = Path(log_dir)
    _log_dir.mkdir(parents=True, exist_ok=True)

    log_file = _log_dir / LOG_FILE_NAME
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONLFormatter())
    file_handler.setLevel(level)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ConsoleFormatter())
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

    root_logger.addHandler(file_handler)

    root_logger.info(
        "Engine logging initialized",
        extra={
            "component": DEFAULT_COMPONENT,
            "context": {"log_format": "jsonl", "log_file": str(log_file)},
        },
    )

    return _log_dir


def setup_logging_from_settings(settings: EngineSettings, console: bool = True) -> Path:
    return setup_logging(settings.log_dir, settings.log_level, console=console)


def get_logger(component: str, color: str = Colors.ENGINE) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        component: Component name (e.g., "SCHEMA", "CRUD")
        color: ANSI color code for the component tag

    Returns:
        Configured logger instance
    """
    if component in _loggers:
        return _loggers[component]

    logger = logging.getLogger(f"{ROOT_LOGGER}.{component.lower().replace(' ', '_')}")

    class ComponentFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if not hasattr(record, "component"):
                record.component = component
            if not hasattr(record, "component_color"):
                record.component_color = color
            return True

    logger.addFilter(ComponentFilter())
    _loggers[component] = logger

    return logger


def get_crud_logger() -> logging.Logger:
    """Logger for CRUD service operations."""
    return get_logger("CRUD", Colors.CRUD)


def get_schema_logger() -> logging.Logger:
    """Logger for schema translation and reloads."""
    return get_logger("SCHEMA", Colors.SCHEMA)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a message with structured context data.

    Args:
        logger: Logger instance
        level: Logging level (logging.INFO, logging.ERROR, etc.)
        message: Human-readable message
        context: Structured context data (included in the JSONL entry)
        **kwargs: Additional context items
    """
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)


# =============================================================================
# Utility Functions
# =============================================================================


def get_log_file() -> Path | None:
    """Get the path to the main log file."""
    if _log_dir:
        return _log_dir / LOG_FILE_NAME
    return None


def get_recent_logs(count: int = 50, level: str | None = None) -> list[dict[str, Any]]:
    """
    Get recent log entries as parsed JSON.

    Args:
        count: Number of recent entries to return
        level: Optional filter by level (ERROR, WARNING, etc.)

    Returns:
        List of log entries (most recent last)
    """
    log_file = get_log_file()
    if not log_file or not log_file.exists():
        return []

    entries: list[dict[str, Any]] = []
    with open(log_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if level and entry.get("level") != level.upper():
                continue
            entries.append(entry)

    return entries[-count:]
