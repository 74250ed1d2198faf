"""
Helper utilities for the Plex Backup Manager.

Small filesystem and formatting functions shared by the orchestrators.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Union

# Fixed English names so package folders do not depend on the host locale.
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def weekday_name(moment: datetime) -> str:
    """English weekday name of a datetime."""
    return WEEKDAYS[moment.weekday()]


def timestamp_slug(moment: datetime) -> str:
    """Compact sortable timestamp used in scratch and snapshot names."""
    return moment.strftime("%Y%m%d_%H%M%S")


def format_bytes(bytes_count: float) -> str:
    """Format bytes into human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.1f} PB"


def directory_size(path: Union[str, Path]) -> int:
    """Total size in bytes of all regular files below a directory."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total


def is_directory_empty(path: Union[str, Path]) -> bool:
    """True if the directory has no entries. Unreadable directories count as non-empty."""
    try:
        with os.scandir(path) as entries:
            return next(entries, None) is None
    except OSError:
        return False


def nearest_existing_parent(path: Union[str, Path]) -> Path:
    """The path itself if it exists, otherwise its closest existing ancestor."""
    candidate = Path(path).absolute()
    while not candidate.exists() and candidate.parent != candidate:
        candidate = candidate.parent
    return candidate
