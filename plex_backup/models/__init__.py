"""
Data models for the Plex Backup Manager.
"""

from plex_backup.models.config import (
    ApplicationProfile,
    BackupOptions,
    PlatformKind,
    RemoteTarget,
    RestoreOptions,
    RetryPolicy,
)
from plex_backup.models.session import (
    BackupPackage,
    LogEntry,
    LogLevel,
    LogSummary,
    OperationKind,
    OperationLog,
    OperationResult,
    ProgressEvent,
    RollbackReport,
    RollbackStatus,
    SafetySnapshot,
)

__all__ = [
    "ApplicationProfile",
    "BackupOptions",
    "BackupPackage",
    "LogEntry",
    "LogLevel",
    "LogSummary",
    "OperationKind",
    "OperationLog",
    "OperationResult",
    "PlatformKind",
    "ProgressEvent",
    "RemoteTarget",
    "RestoreOptions",
    "RetryPolicy",
    "RollbackReport",
    "RollbackStatus",
    "SafetySnapshot",
]
