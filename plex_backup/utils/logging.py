"""
Logging for the Plex Backup Manager.

This module configures the package logger (Rich console output plus an
optional rotating log file) and provides OperationLogger, which records every
step of one backup or restore into its OperationLog while forwarding it to the
standard logging tree and to the caller's event callback.
"""

import logging
import logging.handlers
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from plex_backup.models.session import (
    LogEntry,
    LogLevel,
    OperationKind,
    OperationLog,
    ProgressEvent,
)


LogCallback = Callable[[LogEntry], None]
ProgressCallback = Callable[[ProgressEvent], None]

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    log_rotation: bool = True,
    max_log_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up logging for the Plex Backup Manager.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        rich_console: Whether to use the Rich console handler
        log_rotation: Whether to rotate the log file
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("plex_backup")
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if rich_console:
        console_handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if log_rotation:
            file_handler: logging.Handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_log_size,
                backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(f"plex_backup.{name}")


class OperationLogger:
    """
    Logger for a single operation.

    Writes to the operation's OperationLog, mirrors each entry to the stdlib
    logger ``plex_backup.<component>`` and notifies the optional callbacks.
    Callbacks run on the worker thread; their exceptions are logged and
    swallowed so a broken UI hook can never fail an operation.
    """

    def __init__(
        self,
        operation: OperationKind,
        component: str,
        log: Optional[OperationLog] = None,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None
    ):
        self.operation = operation
        self.log = log if log is not None else OperationLog(operation)
        self.logger = get_logger(component)
        self._on_log = on_log
        self._on_progress = on_progress
        self._step_started: Dict[str, float] = {}

    def child(self, component: str) -> "OperationLogger":
        """Logger for a collaborator that writes into the same operation log."""
        return OperationLogger(
            self.operation,
            component,
            log=self.log,
            on_log=self._on_log,
            on_progress=self._on_progress,
        )

    def _emit(
        self,
        level: LogLevel,
        message: str,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.logger.log(_STDLIB_LEVELS[level], message)
        if level == LogLevel.DEBUG:
            return
        entry = self.log.append(level, message, stage=stage, details=details)
        if self._on_log:
            try:
                self._on_log(entry)
            except Exception as e:
                self.logger.warning(f"Log callback failed: {e}")

    def debug(self, message: str, stage: Optional[str] = None):
        """Log debug message (not recorded in the operation log)."""
        self._emit(LogLevel.DEBUG, message, stage)

    def info(self, message: str, stage: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        """Log info message."""
        self._emit(LogLevel.INFO, message, stage, details)

    def warning(self, message: str, stage: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        """Log warning message."""
        self._emit(LogLevel.WARNING, message, stage, details)

    def error(self, message: str, stage: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        """Log error message."""
        self._emit(LogLevel.ERROR, message, stage, details)

    def step_start(self, stage: str, message: str):
        """Log the start of a stage."""
        self._step_started[stage] = time.monotonic()
        self.info(message, stage=stage)

    def step_complete(self, stage: str, message: str):
        """Log the completion of a stage along with its duration."""
        started = self._step_started.pop(stage, None)
        if started is not None:
            message = f"{message} (took {time.monotonic() - started:.2f}s)"
        self.info(message, stage=stage)

    def step_failed(self, stage: str, error: str):
        """Log a stage failure."""
        self._step_started.pop(stage, None)
        self.error(f"Failed step: {stage} - {error}", stage=stage)

    def progress(self, stage: str, fraction: float, message: str = ""):
        """Notify the progress callback."""
        if not self._on_progress:
            return
        event = ProgressEvent(
            operation=self.operation,
            stage=stage,
            fraction=min(1.0, max(0.0, fraction)),
            message=message,
        )
        try:
            self._on_progress(event)
        except Exception as e:
            self.logger.warning(f"Progress callback failed: {e}")
