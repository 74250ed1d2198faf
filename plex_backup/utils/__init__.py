"""
Utility modules for the Plex Backup Manager.
"""

from plex_backup.utils.helpers import (
    directory_size,
    format_bytes,
    is_directory_empty,
    nearest_existing_parent,
    timestamp_slug,
    weekday_name,
)
from plex_backup.utils.logging import OperationLogger, get_logger, setup_logging

__all__ = [
    "OperationLogger",
    "directory_size",
    "format_bytes",
    "get_logger",
    "is_directory_empty",
    "nearest_existing_parent",
    "setup_logging",
    "timestamp_slug",
    "weekday_name",
]
