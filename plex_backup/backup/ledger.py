"""
Rollback bookkeeping for a single operation.

The ledger records every filesystem side effect an orchestrator makes so the
operation can be undone. Rollback is best-effort: each step that fails is
turned into a warning on the RollbackReport and the remaining steps still
run.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from plex_backup.backup.fileops import RetryingFileOps
from plex_backup.models.config import RetryPolicy
from plex_backup.models.session import RollbackReport
from plex_backup.platform.service import ManagedService
from plex_backup.utils.helpers import is_directory_empty
from plex_backup.utils.logging import OperationLogger

Compensation = Callable[[], Awaitable[None]]

# Rollback should not sit in long backoff loops
ROLLBACK_RETRY = RetryPolicy(max_attempts=3, base_delay=0.5)


class RollbackLedger:
    """
    Record of one operation's side effects.

    Owned by the orchestrator running the operation. ``open()`` creates the
    scratch directory for saved copies; ``close()`` removes it whatever the
    outcome.
    """

    def __init__(
        self,
        logger: OperationLogger,
        file_ops: Optional[RetryingFileOps] = None,
        service: Optional[ManagedService] = None,
        scratch_parent: Optional[Path] = None
    ):
        self.logger = logger
        self.file_ops = file_ops or RetryingFileOps()
        self.service = service
        self.scratch_parent = scratch_parent

        self.service_was_running: Optional[bool] = None
        self.destination_root: Optional[Path] = None
        self.created_directories: List[Path] = []
        self.created_files: List[Path] = []
        self.created_trees: List[Path] = []
        self.overwritten: Dict[Path, Path] = {}
        self.tree_restores: List[Tuple[Path, Path]] = []
        self.compensations: List[Tuple[str, Compensation]] = []
        self.config_done = False
        self.data_done = False
        self.scratch_dir: Optional[Path] = None

    def open(self) -> Path:
        if self.scratch_dir is None:
            parent = str(self.scratch_parent) if self.scratch_parent else None
            self.scratch_dir = Path(tempfile.mkdtemp(prefix="plex_rollback_", dir=parent))
        return self.scratch_dir

    async def close(self) -> None:
        if self.scratch_dir is None:
            return
        try:
            await self.file_ops.remove_tree(self.scratch_dir, ROLLBACK_RETRY)
        except Exception as e:
            self.logger.warning(f"Could not remove rollback scratch directory {self.scratch_dir}: {e}")
        self.scratch_dir = None

    async def __aenter__(self) -> "RollbackLedger":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def record_directory_created(self, path: Path) -> None:
        self.created_directories.append(Path(path))

    def record_file_created(self, path: Path) -> None:
        self.created_files.append(Path(path))

    def record_tree_created(self, path: Path) -> None:
        """A directory whose whole content belongs to this operation."""
        self.created_trees.append(Path(path))

    def record_overwrite(self, original: Path, saved_copy: Path) -> None:
        self.overwritten[Path(original)] = Path(saved_copy)

    def record_tree_restore(self, target: Path, snapshot_dir: Path) -> None:
        """On rollback, replace target's contents with snapshot_dir's."""
        self.tree_restores.append((Path(target), Path(snapshot_dir)))

    def record_compensation(self, label: str, action: Compensation) -> None:
        self.compensations.append((label, action))

    def ensure_directory(self, path: Path) -> bool:
        """
        Create a directory and any missing parents, recording each one created.

        Returns:
            True if the directory did not exist before
        """
        path = Path(path)
        if path.is_dir():
            return False

        missing = []
        candidate = path
        while not candidate.exists():
            missing.append(candidate)
            if candidate.parent == candidate:
                break
            candidate = candidate.parent

        for directory in reversed(missing):
            directory.mkdir(exist_ok=True)
            self.record_directory_created(directory)
        return True

    def save_copy(self, path: Path) -> Path:
        """Copy a file into the scratch directory before it is overwritten."""
        scratch = self.open()
        saved = scratch / f"{len(self.overwritten):03d}_{Path(path).name}"
        shutil.copy2(path, saved)
        self.record_overwrite(path, saved)
        return saved

    async def rollback(self, manage_service: bool = True) -> RollbackReport:
        """
        Undo everything recorded, in the reverse order of risk.

        Args:
            manage_service: Return the service to its pre-operation state. A
                restore passes False because its cleanup step owns the restart.

        Returns:
            RollbackReport; this method never raises
        """
        report = RollbackReport()
        self.logger.info("Starting rollback", stage="rollback")

        if manage_service:
            await self._restore_service_state(report)
        await self._restore_overwritten(report)
        await self._restore_trees(report)
        await self._run_compensations(report)
        await self._delete_created_files(report)
        await self._delete_created_directories(report)

        report.finish()
        if report.requires_manual_review:
            self.logger.warning(report.summary, stage="rollback")
        else:
            self.logger.info(report.summary, stage="rollback")
        return report

    def _warn(self, report: RollbackReport, message: str) -> None:
        report.add_warning(message)
        self.logger.warning(message, stage="rollback")

    async def _restore_service_state(self, report: RollbackReport) -> None:
        if self.service is None or self.service_was_running is None:
            return
        try:
            running = await self.service.is_running()
            if self.service_was_running and not running:
                await self.service.start()
                report.add_action("Restarted service")
            elif not self.service_was_running and running:
                await self.service.stop()
                report.add_action("Stopped service")
        except Exception as e:
            self._warn(report, f"Could not restore service state: {e}")

    async def _restore_overwritten(self, report: RollbackReport) -> None:
        for original, saved in self.overwritten.items():
            try:
                await asyncio.to_thread(shutil.copy2, saved, original)
                report.add_action(f"Restored {original}")
            except Exception as e:
                self._warn(report, f"Could not restore {original} from {saved}: {e}")

    async def _restore_trees(self, report: RollbackReport) -> None:
        for target, snapshot_dir in self.tree_restores:
            try:
                await self.file_ops.clear_directory(target, ROLLBACK_RETRY)
                if snapshot_dir.is_dir():
                    await self.file_ops.copy_tree(snapshot_dir, target)
                report.add_action(f"Restored {target} from {snapshot_dir}")
            except Exception as e:
                self._warn(report, f"Could not restore {target} from {snapshot_dir}: {e}")

    async def _run_compensations(self, report: RollbackReport) -> None:
        for label, action in self.compensations:
            try:
                await action()
                report.add_action(label)
            except Exception as e:
                self._warn(report, f"{label} failed: {e}")

    async def _delete_created_files(self, report: RollbackReport) -> None:
        for path in self.created_files:
            try:
                if path.exists():
                    path.unlink()
                    report.add_action(f"Deleted {path}")
            except Exception as e:
                self._warn(report, f"Could not delete {path}: {e}")

        for path in self.created_trees:
            try:
                if path.exists():
                    await self.file_ops.remove_tree(path, ROLLBACK_RETRY)
                    report.add_action(f"Deleted {path}")
            except Exception as e:
                self._warn(report, f"Could not delete {path}: {e}")

    async def _delete_created_directories(self, report: RollbackReport) -> None:
        for path in reversed(self.created_directories):
            if not path.exists():
                continue
            if not is_directory_empty(path):
                # May hold content the user put there
                self._warn(report, f"Left {path} in place: directory is not empty")
                continue
            try:
                path.rmdir()
                report.add_action(f"Removed directory {path}")
            except Exception as e:
                self._warn(report, f"Could not remove directory {path}: {e}")
