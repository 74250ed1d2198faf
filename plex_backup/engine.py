"""
Worker facade for the Plex Backup Manager.

BackupEngine is what callers (the CLI, a GUI) talk to. It runs one operation
at a time on a dedicated worker thread, turns exceptions into explicit
OperationResult values with an ErrorKind, and forwards log entries and
progress events from the worker to the caller's callbacks.
"""

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from plex_backup.backup.fileops import RetryingFileOps
from plex_backup.backup.manager import BackupOrchestrator
from plex_backup.backup.restore import RestoreOrchestrator
from plex_backup.backup.validator import IntegrityValidator
from plex_backup.core.exceptions import OperationFailed, PlexBackupError, classify_error
from plex_backup.models.config import ApplicationProfile, BackupOptions, RemoteTarget, RestoreOptions
from plex_backup.models.session import OperationKind, OperationResult, SafetySnapshot
from plex_backup.platform.process import ExternalProcess, SubprocessRunner
from plex_backup.platform.service import ManagedService, ProcessServiceController, ServiceController
from plex_backup.transfer.base import RemoteTransport
from plex_backup.transfer.remote_restore import RemoteRestorePipeline
from plex_backup.transfer.ssh import ParamikoTransport
from plex_backup.utils.logging import LogCallback, OperationLogger, ProgressCallback

logger = logging.getLogger(__name__)

OperationBody = Callable[[OperationLogger], Awaitable[Dict[str, Any]]]


class BackupEngine:
    """
    Runs backup, restore and remote restore operations.

    Operations submitted while another is running queue behind it on the
    single worker; the engine never runs two at once. Callbacks are invoked
    on the worker thread.
    """

    def __init__(
        self,
        profile: Optional[ApplicationProfile] = None,
        runner: Optional[ExternalProcess] = None,
        service_controller: Optional[ServiceController] = None,
        transport: Optional[RemoteTransport] = None,
        file_ops: Optional[RetryingFileOps] = None
    ):
        self.profile = profile or ApplicationProfile.for_current_platform()
        self.runner = runner or SubprocessRunner()
        controller = service_controller or ProcessServiceController(process_names=self.profile.process_names)
        self.service = ManagedService(controller, self.profile)
        self.transport = transport or ParamikoTransport()
        self.file_ops = file_ops or RetryingFileOps()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="plex-backup-worker")

    def __enter__(self) -> "BackupEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def validate(self, package_path: Path, destination: Optional[Path] = None) -> bool:
        """Structural check, plus a disk-space check when a destination is given."""
        validator = IntegrityValidator(self.profile)
        if not validator.validate(package_path):
            return False
        if destination is not None:
            return validator.check_disk_space(package_path, destination)
        return True

    def submit_backup(
        self,
        options: BackupOptions,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> "Future[OperationResult]":
        async def body(op_logger: OperationLogger) -> Dict[str, Any]:
            orchestrator = BackupOrchestrator(self.profile, self.runner, self.service, self.file_ops)
            package = await orchestrator.run(options, op_logger)
            return {"package_path": str(package.path)}

        return self._submit(OperationKind.BACKUP, body, on_log, on_progress)

    def submit_restore(
        self,
        options: RestoreOptions,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> "Future[OperationResult]":
        async def body(op_logger: OperationLogger) -> Dict[str, Any]:
            snapshot = await self._restorer().run(options, op_logger)
            return {
                "package_path": str(options.package_path),
                "safety_snapshot": str(snapshot.root) if snapshot is not None else None,
            }

        return self._submit(OperationKind.RESTORE, body, on_log, on_progress)

    def submit_recover(
        self,
        snapshot: Union[SafetySnapshot, Path],
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> "Future[OperationResult]":
        async def body(op_logger: OperationLogger) -> Dict[str, Any]:
            report = await self._restorer().recover(snapshot, op_logger)
            result: Dict[str, Any] = {"rollback_report": report}
            if report.requires_manual_review:
                root = snapshot.root if isinstance(snapshot, SafetySnapshot) else snapshot
                result["safety_snapshot"] = str(root)
            return result

        return self._submit(OperationKind.RESTORE, body, on_log, on_progress)

    def submit_remote_restore(
        self,
        package_path: Path,
        target: RemoteTarget,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> "Future[OperationResult]":
        async def body(op_logger: OperationLogger) -> Dict[str, Any]:
            report = await RemoteRestorePipeline(self.transport).run(package_path, target, op_logger)
            return {
                "package_path": str(package_path),
                "remote_scratch": None if report.scratch_removed else report.scratch_dir,
            }

        return self._submit(OperationKind.REMOTE_RESTORE, body, on_log, on_progress)

    def backup(self, options: BackupOptions, **callbacks) -> OperationResult:
        return self.submit_backup(options, **callbacks).result()

    def restore(self, options: RestoreOptions, **callbacks) -> OperationResult:
        return self.submit_restore(options, **callbacks).result()

    def recover(self, snapshot: Union[SafetySnapshot, Path], **callbacks) -> OperationResult:
        return self.submit_recover(snapshot, **callbacks).result()

    def remote_restore(self, package_path: Path, target: RemoteTarget, **callbacks) -> OperationResult:
        return self.submit_remote_restore(package_path, target, **callbacks).result()

    def _restorer(self) -> RestoreOrchestrator:
        return RestoreOrchestrator(self.profile, self.runner, self.service, self.file_ops)

    def _submit(
        self,
        operation: OperationKind,
        body: OperationBody,
        on_log: Optional[LogCallback],
        on_progress: Optional[ProgressCallback]
    ) -> "Future[OperationResult]":
        return self._executor.submit(self._execute, operation, body, on_log, on_progress)

    def _execute(
        self,
        operation: OperationKind,
        body: OperationBody,
        on_log: Optional[LogCallback],
        on_progress: Optional[ProgressCallback]
    ) -> OperationResult:
        op_logger = OperationLogger(operation, operation.value, on_log=on_log, on_progress=on_progress)
        try:
            fields = asyncio.run(body(op_logger))
        except Exception as e:
            return self._failed(operation, op_logger, e)

        op_logger.log.seal()
        return OperationResult(operation=operation, success=True, log=op_logger.log, **fields)

    def _failed(self, operation: OperationKind, op_logger: OperationLogger, error: Exception) -> OperationResult:
        message = error.message if isinstance(error, PlexBackupError) else str(error)
        if not isinstance(error, OperationFailed):
            # Orchestrators log their own failures; anything else surfaces here
            op_logger.error(f"{operation.value} failed: {message}")
        if not isinstance(error, PlexBackupError):
            logger.exception(f"Unexpected error during {operation.value}")

        details = error.details if isinstance(error, PlexBackupError) else {}
        op_logger.log.seal()
        return OperationResult(
            operation=operation,
            success=False,
            log=op_logger.log,
            error_kind=classify_error(error),
            error_message=message,
            rollback_report=getattr(error, "rollback_report", None),
            safety_snapshot=getattr(error, "safety_snapshot", None),
            remote_scratch=details.get("remote_scratch"),
            remote_snapshot=details.get("remote_snapshot"),
        )
