"""
Plex Backup Manager

Backs up and restores Plex Media Server's data directory and registry
configuration, with automatic rollback on partial failure and a remote
restore path over SSH.
"""

__version__ = "0.1.0"

from plex_backup.engine import BackupEngine
from plex_backup.models.config import ApplicationProfile, BackupOptions, RemoteTarget, RestoreOptions
from plex_backup.models.session import OperationResult

__all__ = [
    "ApplicationProfile",
    "BackupEngine",
    "BackupOptions",
    "OperationResult",
    "RemoteTarget",
    "RestoreOptions",
]
