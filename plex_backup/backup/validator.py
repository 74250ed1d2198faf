"""
Pre-restore integrity checks.

IntegrityValidator decides whether a package is structurally plausible and
whether the destination volume has room for it. It never touches the
destination: a restore rejected here has had no side effects.
"""

import logging
import shutil
import zipfile
from pathlib import Path
from typing import List

from plex_backup.backup.package import archive_prefix, find_component_root, is_archive
from plex_backup.core.exceptions import ValidationFailed
from plex_backup.models.config import DATA_DIR_NAME, REG_DIR_NAME, ApplicationProfile
from plex_backup.utils.helpers import (
    directory_size,
    format_bytes,
    is_directory_empty,
    nearest_existing_parent,
)

logger = logging.getLogger(__name__)

# Compressed archives are assumed to expand to this multiple of their size
ARCHIVE_EXPANSION_FACTOR = 3
SAFETY_FACTOR = 2


class IntegrityValidator:
    """Structural and disk-space checks for backup packages."""

    def __init__(self, profile: ApplicationProfile):
        self.profile = profile

    def inspect(self, package_path: Path) -> List[str]:
        """
        Run the structural checks.

        Returns:
            Descriptions of the failed checks; empty for a valid package
        """
        package_path = Path(package_path)
        if package_path.is_dir():
            return self._inspect_directory(package_path)
        if package_path.is_file():
            return self._inspect_archive(package_path)
        return [f"Package not found: {package_path}"]

    def validate(self, package_path: Path) -> bool:
        failed = self.inspect(package_path)
        for check in failed:
            logger.info(f"Package check failed: {check}")
        return not failed

    def _inspect_directory(self, path: Path) -> List[str]:
        root = find_component_root(path)
        reg_dir = root / REG_DIR_NAME
        data_dir = root / DATA_DIR_NAME

        has_config = reg_dir.is_dir() and any(reg_dir.glob("*.reg"))
        has_data = data_dir.is_dir() and not is_directory_empty(data_dir)
        if not (has_config or has_data):
            return [f"Neither {REG_DIR_NAME} nor {DATA_DIR_NAME} found in {path}"]

        if has_data:
            for relative in self.profile.critical_files:
                candidate = data_dir / relative
                if candidate.is_file() and candidate.stat().st_size > 0:
                    break
            else:
                return [f"No critical file with content in {data_dir}"]
        return []

    def _inspect_archive(self, path: Path) -> List[str]:
        if not is_archive(path):
            return [f"Not a readable archive: {path}"]
        try:
            with zipfile.ZipFile(path) as zf:
                infos = {info.filename: info for info in zf.infolist() if not info.is_dir()}
        except (zipfile.BadZipFile, OSError) as e:
            return [f"Cannot read archive {path}: {e}"]

        prefix = archive_prefix(list(infos))
        if prefix is None:
            return [f"Neither {REG_DIR_NAME} nor {DATA_DIR_NAME} found in {path.name}"]

        has_config = any(
            name.startswith(f"{prefix}{REG_DIR_NAME}/") and name.lower().endswith(".reg")
            for name in infos
        )
        has_data = any(name.startswith(f"{prefix}{DATA_DIR_NAME}/") for name in infos)
        if not (has_config or has_data):
            return [f"Neither {REG_DIR_NAME} nor {DATA_DIR_NAME} found in {path.name}"]

        if has_data:
            for relative in self.profile.critical_files:
                info = infos.get(f"{prefix}{DATA_DIR_NAME}/{relative}")
                if info is not None and info.file_size > 0:
                    break
            else:
                return [f"No critical file with content in {path.name}"]
        return []

    def required_space(self, package_path: Path) -> int:
        """Bytes the restore needs free on the destination, safety factor included."""
        package_path = Path(package_path)
        if package_path.is_dir():
            size = directory_size(package_path)
        else:
            size = package_path.stat().st_size * ARCHIVE_EXPANSION_FACTOR
        return size * SAFETY_FACTOR

    def check_disk_space(self, package_path: Path, destination: Path) -> bool:
        """
        Check that the destination volume can hold the restored data.

        A missing package fails the check. Any failure to measure passes it,
        so that a flaky size query never blocks a restore.
        """
        package_path = Path(package_path)
        if not package_path.exists():
            return False
        try:
            required = self.required_space(package_path)
            free = shutil.disk_usage(nearest_existing_parent(destination)).free
        except OSError as e:
            logger.warning(f"Could not measure disk space, skipping check: {e}")
            return True

        if free < required:
            logger.warning(
                f"Insufficient disk space: {format_bytes(required)} required, "
                f"{format_bytes(free)} available"
            )
            return False
        return True

    def validate_or_raise(self, package_path: Path, destination: Path) -> None:
        """
        Run every pre-restore check.

        Raises:
            ValidationFailed: Listing each failed check
        """
        failed = self.inspect(package_path)
        if not failed and not self.check_disk_space(package_path, destination):
            failed.append(f"Insufficient free space on the volume of {destination}")
        if failed:
            raise ValidationFailed(
                f"Backup package failed validation: {'; '.join(failed)}",
                failed_checks=failed
            )
