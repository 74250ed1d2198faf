"""
Session models for the Plex Backup Manager.

This module defines the runtime data structures produced while an operation
runs: the append-only operation log, rollback reports, progress events, the
backup package and safety snapshot descriptors, and the final result handed
back to the caller.
"""

import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from plex_backup.core.exceptions import ErrorKind


class OperationKind(str, Enum):
    """Operations the engine can run."""
    BACKUP = "backup"
    RESTORE = "restore"
    REMOTE_RESTORE = "remote_restore"


class LogLevel(str, Enum):
    """Log entry levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogEntry(BaseModel):
    """Single timestamped entry of an operation log."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    level: LogLevel
    message: str
    stage: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def render(self) -> str:
        """Render the entry as a single log line."""
        return f"[{self.timestamp:%H:%M:%S}] {self.level.value.upper()}: {self.message}"


class LogSummary(BaseModel):
    """Aggregate view of an operation log."""
    duration_seconds: float
    steps_completed: int
    warning_count: int
    error_count: int

    def to_text(self) -> str:
        minutes, seconds = divmod(int(self.duration_seconds), 60)
        text = f"Operation Duration: {minutes:02d}:{seconds:02d}\n"
        text += f"Steps Completed: {self.steps_completed}\n"
        if self.warning_count:
            text += f"Warnings: {self.warning_count}\n"
        if self.error_count:
            text += f"Errors Encountered: {self.error_count}\n"
        return text


class OperationLog:
    """
    Append-only, timestamped log of one operation.

    Entries are appended by the worker running the operation and may be read
    from any thread. Once sealed at the end of the operation the log rejects
    further entries.
    """

    def __init__(self, operation: OperationKind):
        self.operation = operation
        self.started_at = datetime.now()
        self.finished_at: Optional[datetime] = None
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()

    def append(
        self,
        level: LogLevel,
        message: str,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> LogEntry:
        entry = LogEntry(level=level, message=message, stage=stage, details=details or {})
        with self._lock:
            if self.finished_at is not None:
                raise RuntimeError(f"Operation log for {self.operation.value} is sealed")
            self._entries.append(entry)
        return entry

    def seal(self) -> None:
        """Mark the operation as finished. Idempotent."""
        with self._lock:
            if self.finished_at is None:
                self.finished_at = datetime.now()

    @property
    def sealed(self) -> bool:
        return self.finished_at is not None

    @property
    def entries(self) -> Tuple[LogEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def _count(self, level: LogLevel) -> int:
        return sum(1 for entry in self.entries if entry.level == level)

    @property
    def warning_count(self) -> int:
        return self._count(LogLevel.WARNING)

    @property
    def error_count(self) -> int:
        return self._count(LogLevel.ERROR)

    @property
    def duration(self) -> float:
        """Elapsed seconds, up to now for a running operation."""
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def summary(self) -> LogSummary:
        return LogSummary(
            duration_seconds=self.duration,
            steps_completed=self._count(LogLevel.INFO),
            warning_count=self.warning_count,
            error_count=self.error_count,
        )

    def full_text(self) -> str:
        """All entries in chronological order, one per line."""
        ordered = sorted(self.entries, key=lambda entry: entry.timestamp)
        return "\n".join(entry.render() for entry in ordered)

    def __len__(self) -> int:
        return len(self.entries)


class RollbackStatus(str, Enum):
    """Outcome of a best-effort rollback."""
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"


class RollbackReport(BaseModel):
    """What a rollback did, and what it could not undo."""
    status: RollbackStatus = RollbackStatus.COMPLETED
    actions: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def add_action(self, message: str) -> None:
        self.actions.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        self.status = RollbackStatus.COMPLETED_WITH_WARNINGS

    def finish(self) -> "RollbackReport":
        self.finished_at = datetime.now()
        return self

    @property
    def requires_manual_review(self) -> bool:
        return self.status == RollbackStatus.COMPLETED_WITH_WARNINGS

    @property
    def summary(self) -> str:
        if self.requires_manual_review:
            return (
                f"Rolled back with {len(self.warnings)} warning(s) - manual review required"
            )
        return "Fully rolled back"


class ProgressEvent(BaseModel):
    """Progress notification emitted from the worker to the caller."""
    model_config = ConfigDict(frozen=True)

    operation: OperationKind
    stage: str
    fraction: float = Field(ge=0.0, le=1.0)
    message: str = ""


class BackupPackage(BaseModel):
    """A named, timestamped backup container on disk."""
    name: str
    created_at: datetime = Field(frozen=True)
    path: Path = Field(frozen=True)
    is_archive: bool = False
    has_config: bool = False
    has_data: bool = False
    has_logs: bool = False


SAFETY_MANIFEST_NAME = "snapshot.json"


class SafetySnapshot(BaseModel):
    """Minimal copy of live data taken before a restore mutates anything."""
    root: Path
    source: Path
    captured: List[str] = Field(default_factory=list)
    config_artifact: Optional[Path] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def exists(self) -> bool:
        return self.root.is_dir()

    def write_manifest(self) -> Path:
        """Record the snapshot next to its data so it can be recovered later."""
        manifest = self.root / SAFETY_MANIFEST_NAME
        manifest.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return manifest

    @classmethod
    def load(cls, root: Path) -> "SafetySnapshot":
        """Load a snapshot from the manifest in its root directory."""
        manifest = Path(root) / SAFETY_MANIFEST_NAME
        return cls.model_validate_json(manifest.read_text(encoding="utf-8"))


class OperationResult(BaseModel):
    """Final outcome of an engine operation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: OperationKind
    success: bool
    log: OperationLog
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    rollback_report: Optional[RollbackReport] = None
    safety_snapshot: Optional[str] = None
    package_path: Optional[str] = None
    remote_scratch: Optional[str] = None
    remote_snapshot: Optional[str] = None

    @property
    def warnings(self) -> List[str]:
        return [entry.message for entry in self.log.entries if entry.level == LogLevel.WARNING]
