"""
Core module for the Plex Backup Manager.

This module contains the error taxonomy used throughout the application.
"""

from plex_backup.core.exceptions import (
    ConfigStoreError,
    CopyFailed,
    ErrorKind,
    ExternalToolFailed,
    OperationFailed,
    OperationTimedOut,
    PlexBackupError,
    RemoteCommandFailed,
    ServiceControlError,
    TargetLocked,
    ValidationFailed,
    VerificationFailed,
    classify_error,
)

__all__ = [
    "ConfigStoreError",
    "CopyFailed",
    "ErrorKind",
    "ExternalToolFailed",
    "OperationFailed",
    "OperationTimedOut",
    "PlexBackupError",
    "RemoteCommandFailed",
    "ServiceControlError",
    "TargetLocked",
    "ValidationFailed",
    "VerificationFailed",
    "classify_error",
]
