"""
Local backup and restore: rollback ledger, resilient file operations, mirror
copy, package validation and the two orchestrators.
"""

from plex_backup.backup.copy import CopyStrategy, MirrorOutcome
from plex_backup.backup.fileops import RetryingFileOps
from plex_backup.backup.ledger import RollbackLedger
from plex_backup.backup.manager import BackupOrchestrator
from plex_backup.backup.package import PackageLayout, describe_package, extract_archive
from plex_backup.backup.restore import RestoreOrchestrator
from plex_backup.backup.validator import IntegrityValidator

__all__ = [
    "BackupOrchestrator",
    "CopyStrategy",
    "IntegrityValidator",
    "MirrorOutcome",
    "PackageLayout",
    "RestoreOrchestrator",
    "RetryingFileOps",
    "RollbackLedger",
    "describe_package",
    "extract_archive",
]
