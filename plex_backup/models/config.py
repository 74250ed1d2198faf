"""
Configuration models for the Plex Backup Manager.

This module defines the immutable, per-operation Pydantic models that the
orchestrators receive: where the managed application lives, how backups and
restores should behave, and how to reach a remote host.
"""

import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


WINDOWS_DATA_DIR_NAME = "Plex Media Server"
LINUX_DATA_DIR = "/var/lib/plexmediaserver/Library/Application Support/Plex Media Server"
PLEX_REGISTRY_KEY = r"HKEY_CURRENT_USER\Software\Plex, Inc."

# Backup package layout
REG_DIR_NAME = "RegBackup"
DATA_DIR_NAME = "FileBackup"
LOGS_DIR_NAME = "Logs"


class PlatformKind(str, Enum):
    """Host platforms with a known application layout."""
    WINDOWS = "windows"
    LINUX = "linux"


class ApplicationProfile(BaseModel):
    """Where the managed application keeps its data and how to recognise it."""
    model_config = ConfigDict(frozen=True)

    platform: PlatformKind
    data_dir: Path
    # None when the platform keeps no configuration outside the data directory
    registry_key: Optional[str] = PLEX_REGISTRY_KEY
    process_names: Tuple[str, ...] = ("Plex Media Server",)
    executable_paths: Tuple[Path, ...] = ()
    critical_files: Tuple[str, ...] = (
        "Preferences.xml",
        "Plug-in Support/Databases/com.plexapp.plugins.library.db",
    )
    # (relative path, minimum size in bytes) - any one match passes verification
    verification_thresholds: Tuple[Tuple[str, int], ...] = (
        ("Preferences.xml", 100),
        ("Plug-in Support/Databases/com.plexapp.plugins.library.db", 1000),
    )
    snapshot_paths: Tuple[str, ...] = (
        "Preferences.xml",
        "Plug-in Support/Databases",
        "Media/localhost",
    )
    mirror_excludes: Tuple[str, ...] = ("Cache",)
    logs_dir_name: str = "Logs"

    @classmethod
    def windows(cls, local_app_data: Optional[str] = None) -> "ApplicationProfile":
        """Default profile for a Windows install."""
        base = local_app_data or os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return cls(
            platform=PlatformKind.WINDOWS,
            data_dir=Path(base) / WINDOWS_DATA_DIR_NAME,
            executable_paths=(
                Path(r"C:\Program Files (x86)\Plex\Plex Media Server\Plex Media Server.exe"),
                Path(r"C:\Program Files\Plex\Plex Media Server\Plex Media Server.exe"),
            ),
        )

    @classmethod
    def linux(cls) -> "ApplicationProfile":
        """Default profile for a Linux package install."""
        return cls(
            platform=PlatformKind.LINUX,
            data_dir=Path(LINUX_DATA_DIR),
            registry_key=None,
            process_names=("Plex Media Server",),
            executable_paths=(Path("/usr/lib/plexmediaserver/Plex Media Server"),),
        )

    @property
    def has_config_store(self) -> bool:
        return self.registry_key is not None

    @classmethod
    def for_current_platform(cls) -> "ApplicationProfile":
        """Pick the default profile for the interpreter's host."""
        return cls.windows() if os.name == "nt" else cls.linux()


class RetryPolicy(BaseModel):
    """Bounded retry with linear backoff for contended filesystem work."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, le=50)
    base_delay: float = Field(default=1.0, ge=0.0)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * attempt


class BackupOptions(BaseModel):
    """Options for a single backup operation."""
    model_config = ConfigDict(frozen=True)

    destination_root: Path
    include_config: bool = True
    include_data: bool = True
    include_logs: bool = False
    stop_service: bool = True
    enable_rollback: bool = True
    mirror_timeout: float = Field(default=3600.0, gt=0)
    timestamp: Optional[datetime] = None

    @model_validator(mode="after")
    def at_least_one_component(self):
        if not (self.include_config or self.include_data):
            raise ValueError("A backup must include the configuration, the data files, or both")
        return self


class RestoreOptions(BaseModel):
    """Options for a single local restore operation."""
    model_config = ConfigDict(frozen=True)

    package_path: Path
    target_dir: Optional[Path] = None
    restore_config: bool = True
    restore_data: bool = True
    stop_service: bool = True
    restart_service: bool = True
    enable_rollback: bool = True
    keep_safety_snapshot: bool = False
    operation_timeout: float = Field(default=7200.0, gt=0)
    mirror_timeout: float = Field(default=3600.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    snapshot_root: Optional[Path] = None

    @model_validator(mode="after")
    def at_least_one_component(self):
        if not (self.restore_config or self.restore_data):
            raise ValueError("A restore must include the configuration, the data files, or both")
        return self


class RemoteTarget(BaseModel):
    """Connection parameters and paths for a remote restore."""
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    password: Optional[str] = Field(default=None, repr=False)
    key_filename: Optional[str] = None
    data_path: str = LINUX_DATA_DIR
    scratch_path: str = "/tmp/plex_restore"
    manage_service: bool = True
    service_name: str = "plexmediaserver"
    command_timeout: float = Field(default=60.0, gt=0)
    copy_timeout: float = Field(default=3600.0, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)
    service_settle_seconds: float = Field(default=3.0, ge=0)
    service_candidates: Tuple[str, ...] = ("plexmediaserver", "plex", "pms")
    owner_candidates: Tuple[str, ...] = ("plex", "plexmediaserver", "pms")

    @field_validator("host", "username", "data_path", "scratch_path")
    @classmethod
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("Value must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def credential_required(self):
        if not self.password and not self.key_filename:
            raise ValueError("Either a password or a private key file is required")
        return self
