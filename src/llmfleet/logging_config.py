# src/llmfleet/logging_config.py
"""
Logging configuration for LLMFleet.

Every module logs through ``logging.getLogger(__name__)``; this module only
wires handlers onto the root logger when an application asks for it. The
library never configures logging on import.

Key concepts:

    **Display filter**: When ``console_enabled=False`` (the default), the
    console handler still exists but only passes through log records that
    carry ``extra={"display": True}``. Operational messages such as
    "Materialized agent 'x' on instance(s) [0, 1]" can reach the user while the
    per-request routing chatter stays in the file.

    **File modes**: ``file_mode="per_run"`` writes a new timestamped file per
    process; ``file_mode="single"`` uses a ``RotatingFileHandler``.

Usage:
    from llmfleet.logging_config import configure_logging, log_display

    configure_logging(app_name="fleet-worker", config={"console_enabled": True})
    log_display(logger, logging.INFO, "Fleet ready with %d instances", count)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": False,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/llmfleet/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "llmfleet": "INFO",
        "openai": "WARNING",
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "asyncio": "WARNING",
    },
}


def _resolve_level(value: Any, default: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    Behavior matrix::

        +------------------------+--------------+-----------------+
        | console_global         | display=True | display=False/  |
        |                        |              | absent          |
        +------------------------+--------------+-----------------+
        | True  (verbose)        | PASS         | PASS            |
        | False (default/quiet)  | PASS*        | BLOCK           |
        +------------------------+--------------+-----------------+

        * subject to display_min_level
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


class UnifiedLoggingManager:
    """
    Singleton manager for the process-wide logging setup.

    Ensures handlers are installed once and allows runtime level changes.
    """

    _instance: Optional["UnifiedLoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None

    def __new__(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    def configure(
        self,
        app_name: str = "llmfleet",
        config: dict[str, Any] | None = None,
        force_reconfigure: bool = False,
    ) -> Path | None:
        """
        Install console and (optionally) file handlers on the root logger.

        Args:
            app_name: Used in the log file name.
            config: Logging settings; merged over DEFAULT_LOGGING_CONFIG.
            force_reconfigure: Replace an existing setup.

        Returns:
            Path to the log file, or None when file logging is disabled.
        """
        if UnifiedLoggingManager._configured and not force_reconfigure:
            return UnifiedLoggingManager._log_file_path

        log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}

        root_logger = logging.getLogger()
        for handler in (self._console_handler, self._file_handler):
            if handler is not None:
                root_logger.removeHandler(handler)
                handler.close()
        self._console_handler = None
        self._file_handler = None
        root_logger.setLevel(logging.DEBUG)

        console_globally_enabled = bool(log_config.get("console_enabled", False))
        display_filter = DisplayFilter(
            console_globally_enabled=console_globally_enabled,
            display_min_level=_resolve_level(log_config.get("display_min_level"), logging.INFO),
        )
        console_handler = logging.StreamHandler(sys.stderr)
        if console_globally_enabled:
            console_handler.setLevel(_resolve_level(log_config.get("console_level"), logging.WARNING))
        else:
            # The filter is the only gate in quiet mode.
            console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(log_config["console_format"]))
        console_handler.addFilter(display_filter)
        root_logger.addHandler(console_handler)
        self._console_handler = console_handler

        log_file_path = None
        if log_config.get("file_enabled", False):
            self._file_handler, log_file_path = self._create_file_handler(log_config, app_name)
            if self._file_handler:
                root_logger.addHandler(self._file_handler)

        components = log_config.get("components") or DEFAULT_LOGGING_CONFIG["components"]
        for component_name, level_str in components.items():
            logging.getLogger(component_name).setLevel(_resolve_level(level_str, logging.INFO))

        UnifiedLoggingManager._configured = True
        UnifiedLoggingManager._log_file_path = log_file_path

        if log_file_path:
            logging.getLogger("llmfleet.logging_config").debug(f"Logging configured. Log file: {log_file_path}")
        return log_file_path

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        log_dir = Path(os.path.expanduser(config["file_directory"]))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        try:
            if config.get("file_mode", "per_run") == "single":
                try:
                    filename = config["file_single_name"].format(app=app_name)
                except (KeyError, ValueError):
                    filename = f"{app_name}.log"
                log_file_path = log_dir / filename
                handler: logging.Handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                    backupCount=config.get("rotation_backup_count", 5),
                    encoding="utf-8",
                )
            else:
                timestamp = datetime.now()
                try:
                    filename = config["file_name_pattern"].format(app=app_name, timestamp=timestamp)
                except (KeyError, ValueError):
                    filename = f"{app_name}_{timestamp.strftime('%Y%m%d_%H%M%S')}.log"
                log_file_path = log_dir / filename
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_resolve_level(config.get("file_level"), logging.DEBUG))
        handler.setFormatter(logging.Formatter(config["file_format"]))
        return handler, log_file_path



def configure_logging(
    app_name: str = "llmfleet",
    config: dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """
    Configure logging for an application embedding LLMFleet.

    Example:
        configure_logging(
            app_name="fleet-worker",
            config={"console_enabled": True, "console_level": "INFO"},
        )
    """
    return UnifiedLoggingManager.get_instance().configure(
        app_name=app_name,
        config=config,
        force_reconfigure=force_reconfigure,
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log a message that also appears on console in quiet mode.

    Sets ``extra={"display": True}`` (merged with any caller ``extra``).
    ``display_min_level`` still applies.
    """
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    kwargs["extra"] = extra
    logger.log(level, msg, *args, **kwargs)
