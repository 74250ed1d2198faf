"""
Backup package layout, description and archive handling.

A package is a directory named ``{weekday} {dd-MM-yyyy}-Backup`` holding up
to three component folders, or a zip archive of such a directory (with or
without the root folder stored in it).
"""

import os
import threading
import zipfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from plex_backup.backup.fileops import CopyInterrupted
from plex_backup.models.config import DATA_DIR_NAME, LOGS_DIR_NAME, REG_DIR_NAME
from plex_backup.models.session import BackupPackage
from plex_backup.utils.helpers import is_directory_empty, weekday_name

COMPONENT_DIRS = (REG_DIR_NAME, DATA_DIR_NAME, LOGS_DIR_NAME)
ROOT_SUFFIX = "-Backup"


class PackageLayout:
    """Paths of a backup package taken at a given moment."""

    def __init__(self, destination_root: Path, moment: datetime):
        self.destination_root = Path(destination_root)
        self.moment = moment
        self.weekday = weekday_name(moment)

    @property
    def root_name(self) -> str:
        return f"{self.weekday} {self.moment:%d-%m-%Y}{ROOT_SUFFIX}"

    @property
    def root(self) -> Path:
        return self.destination_root / self.root_name

    @property
    def reg_dir(self) -> Path:
        return self.root / REG_DIR_NAME

    @property
    def reg_file(self) -> Path:
        return self.reg_dir / f"Regbackup-{self.weekday}.reg"

    @property
    def data_dir(self) -> Path:
        return self.root / DATA_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.root / LOGS_DIR_NAME

    @property
    def log_file(self) -> Path:
        return self.logs_dir / f"LogBackup-{self.weekday}.txt"


def is_archive(path: Path) -> bool:
    return Path(path).is_file() and zipfile.is_zipfile(path)


def archive_prefix(names: Sequence[str]) -> Optional[str]:
    """
    Prefix under which the component folders sit inside an archive.

    Returns "" when they are at the top level, "<root>/" when they sit in a
    single root folder, or None when the archive has no component folder.
    """
    for name in names:
        parts = name.replace("\\", "/").split("/")
        if parts[0] in COMPONENT_DIRS and len(parts) > 1:
            return ""
    for name in names:
        parts = name.replace("\\", "/").split("/")
        if len(parts) > 2 and parts[1] in COMPONENT_DIRS:
            return parts[0] + "/"
    return None


def find_component_root(path: Path) -> Path:
    """The directory holding the component folders: path itself or its single subfolder."""
    path = Path(path)
    if any((path / name).is_dir() for name in COMPONENT_DIRS):
        return path
    children = [child for child in path.iterdir() if child.is_dir()]
    if len(children) == 1 and any((children[0] / name).is_dir() for name in COMPONENT_DIRS):
        return children[0]
    return path


def parse_package_date(name: str) -> Optional[datetime]:
    """Date encoded in a package name, if it follows the naming scheme."""
    stem = name[:-len(ROOT_SUFFIX)] if name.endswith(ROOT_SUFFIX) else name
    try:
        return datetime.strptime(stem.rsplit(" ", 1)[-1], "%d-%m-%Y")
    except ValueError:
        return None


def describe_package(path: Path) -> BackupPackage:
    """Build a BackupPackage descriptor for a directory or archive on disk."""
    path = Path(path)
    archive = is_archive(path)
    name = path.stem if archive else path.name
    created_at = parse_package_date(name) or datetime.fromtimestamp(path.stat().st_mtime)

    if archive:
        with zipfile.ZipFile(path) as zf:
            names = [info.filename for info in zf.infolist() if not info.is_dir()]
        prefix = archive_prefix(names) or ""
        present = {
            component: any(n.startswith(f"{prefix}{component}/") for n in names)
            for component in COMPONENT_DIRS
        }
    else:
        root = find_component_root(path)
        present = {
            component: (root / component).is_dir() and not is_directory_empty(root / component)
            for component in COMPONENT_DIRS
        }

    return BackupPackage(
        name=name,
        created_at=created_at,
        path=path,
        is_archive=archive,
        has_config=present[REG_DIR_NAME],
        has_data=present[DATA_DIR_NAME],
        has_logs=present[LOGS_DIR_NAME],
    )


def extract_archive(archive: Path, destination: Path, stop: Optional[threading.Event] = None) -> Path:
    """
    Extract a package archive and return its component root.

    Args:
        archive: Zip archive to extract
        destination: Directory to extract into
        stop: Checked between members; once set, extraction stops

    Raises:
        zipfile.BadZipFile: If the archive is corrupt
        ValueError: If a member would be written outside destination
        CopyInterrupted: If stop was set before every member was written
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    base = destination.resolve()

    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            target = (base / member.filename).resolve()
            if target != base and base not in target.parents:
                raise ValueError(f"Archive member escapes extraction directory: {member.filename}")
        for member in zf.infolist():
            if stop is not None and stop.is_set():
                raise CopyInterrupted(f"Extraction of {Path(archive).name} cancelled")
            zf.extract(member, destination)

    return find_component_root(destination)


def create_archive(source_dir: Path, archive_path: Path) -> List[str]:
    """
    Zip a package directory with its component folders at the archive's top level.

    Returns:
        Archive member names
    """
    source_dir = Path(source_dir)
    members = []
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as zf:
        for root, dirs, files in os.walk(source_dir):
            dirs.sort()
            for name in sorted(files):
                file_path = Path(root) / name
                arcname = file_path.relative_to(source_dir).as_posix()
                zf.write(file_path, arcname)
                members.append(arcname)
    return members
