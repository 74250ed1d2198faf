"""
Custom exceptions for the Plex Backup Manager.

This module defines the error taxonomy shared by the backup, restore and
remote restore orchestrators, and the ErrorKind values the engine reports
back to callers instead of raw exceptions.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from plex_backup.models.session import OperationLog, RollbackReport


class ErrorKind(str, Enum):
    """Kinds of failure an operation can end with."""
    VALIDATION_FAILED = "validation_failed"
    TARGET_LOCKED = "target_locked"
    EXTERNAL_TOOL_FAILED = "external_tool_failed"
    COPY_FAILED = "copy_failed"
    VERIFICATION_FAILED = "verification_failed"
    REMOTE_COMMAND_FAILED = "remote_command_failed"
    OPERATION_TIMED_OUT = "operation_timed_out"
    ROLLBACK_WARNING = "rollback_warning"
    SERVICE_CONTROL_FAILED = "service_control_failed"
    CONFIG_STORE_FAILED = "config_store_failed"
    UNEXPECTED = "unexpected"


class PlexBackupError(Exception):
    """Base exception class for Plex Backup Manager errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ValidationFailed(PlexBackupError):
    """Raised when a package fails its pre-restore checks. No side effects have happened."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_checks = failed_checks or []


class TargetLocked(PlexBackupError):
    """Raised when a directory could not be cleared within the retry budget."""

    kind = ErrorKind.TARGET_LOCKED

    def __init__(self, path: str, attempts: int, **kwargs):
        super().__init__(
            f"Target is locked and could not be cleared after {attempts} attempts: {path}",
            **kwargs
        )
        self.path = path
        self.attempts = attempts


class ExternalToolFailed(PlexBackupError):
    """Raised when the mirroring tool exits unsuccessfully or runs past its deadline."""

    kind = ErrorKind.EXTERNAL_TOOL_FAILED

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        timed_out: bool = False,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.timed_out = timed_out


class CopyFailed(PlexBackupError):
    """Raised when neither copy path produced a usable result."""

    kind = ErrorKind.COPY_FAILED


class VerificationFailed(PlexBackupError):
    """Raised when restored data does not contain the expected artifacts."""

    kind = ErrorKind.VERIFICATION_FAILED


class RemoteCommandFailed(PlexBackupError):
    """Raised when a remote command exits non-zero and failure was not allowed."""

    kind = ErrorKind.REMOTE_COMMAND_FAILED

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_status: Optional[int] = None,
        stderr: str = "",
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class OperationTimedOut(PlexBackupError):
    """Raised when a whole operation exceeds its wall-clock budget."""

    kind = ErrorKind.OPERATION_TIMED_OUT

    def __init__(self, timeout: float, **kwargs):
        super().__init__(f"Operation exceeded its time budget of {timeout:.0f}s", **kwargs)
        self.timeout = timeout


class ServiceControlError(PlexBackupError):
    """Raised when the managed service cannot be started or stopped."""

    kind = ErrorKind.SERVICE_CONTROL_FAILED


class ConfigStoreError(PlexBackupError):
    """Raised when the configuration export or import fails."""

    kind = ErrorKind.CONFIG_STORE_FAILED


class OperationFailed(PlexBackupError):
    """
    Raised by an orchestrator when an operation fails after mutating state.

    Wraps the original failure together with the rollback outcome so the caller
    sees both.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException,
        rollback_report: Optional["RollbackReport"] = None,
        log: Optional["OperationLog"] = None,
        safety_snapshot: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.cause = cause
        self.kind = classify_error(cause)
        self.rollback_report = rollback_report
        self.log = log
        self.safety_snapshot = safety_snapshot


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to the ErrorKind reported to callers."""
    if isinstance(error, OperationFailed):
        return error.kind
    if isinstance(error, PlexBackupError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.OPERATION_TIMED_OUT
    return ErrorKind.UNEXPECTED
