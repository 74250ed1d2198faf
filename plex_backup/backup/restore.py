"""
Restore orchestration.

RestoreOrchestrator validates a package, takes a safety snapshot of the live
data, stops the service, imports the configuration, clears the data
directory, mirrors the package's data in and verifies the result. The
service restart runs unconditionally at the end. A failure after the
snapshot rolls the target back to it.
"""

import asyncio
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from plex_backup.backup.copy import CopyStrategy
from plex_backup.backup.fileops import RetryingFileOps, checked_copy, run_interruptible
from plex_backup.backup.ledger import RollbackLedger
from plex_backup.backup.package import extract_archive, find_component_root, is_archive
from plex_backup.backup.validator import IntegrityValidator
from plex_backup.core.exceptions import (
    ConfigStoreError,
    CopyFailed,
    OperationFailed,
    OperationTimedOut,
    VerificationFailed,
)
from plex_backup.models.config import DATA_DIR_NAME, REG_DIR_NAME, ApplicationProfile, RestoreOptions
from plex_backup.models.session import RollbackReport, SafetySnapshot
from plex_backup.platform.config_store import RegistryConfigStore
from plex_backup.platform.process import ExternalProcess
from plex_backup.platform.service import ManagedService
from plex_backup.utils.helpers import timestamp_slug
from plex_backup.utils.logging import OperationLogger

SNAPSHOT_PREFIX = "PlexSafetySnapshot_"
SNAPSHOT_CONFIG_NAME = "config_before_restore.reg"


class _RestoreState:
    """What a running restore has produced so far, visible after a timeout."""

    def __init__(self):
        self.snapshot: Optional[SafetySnapshot] = None


class RestoreOrchestrator:
    """Drives a full local restore with a safety net."""

    def __init__(
        self,
        profile: ApplicationProfile,
        runner: ExternalProcess,
        service: ManagedService,
        file_ops: Optional[RetryingFileOps] = None,
        config_store: Optional[RegistryConfigStore] = None,
        validator: Optional[IntegrityValidator] = None
    ):
        self.profile = profile
        self.runner = runner
        self.service = service
        self.file_ops = file_ops or RetryingFileOps()
        if config_store is None and profile.has_config_store:
            config_store = RegistryConfigStore(runner, profile.registry_key)
        self.config_store = config_store
        self.validator = validator or IntegrityValidator(profile)

    async def run(self, options: RestoreOptions, logger: OperationLogger) -> Optional[SafetySnapshot]:
        """
        Run the restore under the operation's wall-clock budget.

        Args:
            options: Package, target and behaviour flags
            logger: Operation logger receiving every step

        Returns:
            The safety snapshot if it was kept, otherwise None

        Raises:
            ValidationFailed: Before anything was touched
            OperationFailed: After the snapshot; carries the rollback report
                and, when kept, the snapshot location. A timeout is reported
                as OperationFailed caused by OperationTimedOut, without rollback.
        """
        state = _RestoreState()
        try:
            return await asyncio.wait_for(
                self._restore(options, logger, state), options.operation_timeout
            )
        except asyncio.TimeoutError:
            error = OperationTimedOut(options.operation_timeout)
            logger.error(f"{error.message}; no rollback was attempted")
            snapshot_location = None
            if state.snapshot is not None and state.snapshot.exists:
                snapshot_location = str(state.snapshot.root)
                logger.warning(f"Safety snapshot kept for manual recovery: {snapshot_location}")
            raise OperationFailed(
                error.message, cause=error, log=logger.log, safety_snapshot=snapshot_location
            ) from error

    async def _restore(
        self,
        options: RestoreOptions,
        logger: OperationLogger,
        state: _RestoreState
    ) -> Optional[SafetySnapshot]:
        target = options.target_dir or self.profile.data_dir
        package_path = options.package_path

        logger.step_start("validate", f"Validating {package_path}")
        await asyncio.to_thread(self.validator.validate_or_raise, package_path, target)
        logger.step_complete("validate", "Package is valid")
        logger.progress("validate", 0.05)

        ledger = RollbackLedger(logger.child("rollback"), self.file_ops, self.service)
        ledger.open()
        ledger.destination_root = target
        try:
            source_root = await self._open_package(package_path, ledger, logger)
            was_running = await self.service.is_running()
            ledger.service_was_running = was_running

            # Visible to the timeout handler before any copying starts
            state.snapshot = snapshot = self._new_snapshot(target, options)
            await self._take_snapshot(snapshot, options, logger)
            logger.progress("snapshot", 0.15)

            try:
                await self._apply(source_root, target, snapshot, ledger, options, was_running, logger)
            except Exception as e:
                logger.step_failed("restore", str(e))
                report = await self._roll_back(ledger, options, logger)
                kept = await self._settle_snapshot_after_failure(snapshot, report, logger)
                raise OperationFailed(
                    f"Restore failed: {e}",
                    cause=e,
                    rollback_report=report,
                    log=logger.log,
                    safety_snapshot=str(snapshot.root) if kept else None
                ) from e
            finally:
                if options.restart_service or was_running:
                    await self._restart_service(logger)
        finally:
            await ledger.close()

        logger.progress("done", 1.0, "Restore completed")
        if options.keep_safety_snapshot:
            logger.info(f"Safety snapshot kept at {snapshot.root}")
            return snapshot
        await self._discard_snapshot(snapshot, logger)
        return None

    async def _apply(
        self,
        source_root: Path,
        target: Path,
        snapshot: SafetySnapshot,
        ledger: RollbackLedger,
        options: RestoreOptions,
        was_running: bool,
        logger: OperationLogger
    ) -> None:
        if options.stop_service and was_running:
            logger.step_start("stop_service", f"Stopping {self.service.display_name}")
            await self.service.stop()
            logger.step_complete("stop_service", "Service stopped")
        logger.progress("stop_service", 0.25)

        if options.restore_config:
            await self._import_config(source_root, snapshot, ledger, logger)
            ledger.config_done = True
        logger.progress("config", 0.35)

        if options.restore_data:
            data_source = source_root / DATA_DIR_NAME
            if not data_source.is_dir():
                logger.warning(f"Package has no {DATA_DIR_NAME} folder, data left untouched")
            else:
                await self._replace_data(data_source, target, snapshot, ledger, options, logger)
                ledger.data_done = True
                logger.progress("verify", 0.9)
                await asyncio.to_thread(self.verify, target)
                logger.info("Restored data verified")

    async def _open_package(self, package_path: Path, ledger: RollbackLedger, logger: OperationLogger) -> Path:
        if not is_archive(package_path):
            return await asyncio.to_thread(find_component_root, package_path)
        logger.step_start("extract", f"Extracting {package_path.name}")
        root = await run_interruptible(extract_archive, package_path, ledger.open() / "package")
        logger.step_complete("extract", "Package extracted")
        return root

    def _new_snapshot(self, target: Path, options: RestoreOptions) -> SafetySnapshot:
        parent = options.snapshot_root or Path(tempfile.gettempdir())
        return SafetySnapshot(
            root=parent / f"{SNAPSHOT_PREFIX}{timestamp_slug(datetime.now())}",
            source=target,
        )

    async def _take_snapshot(
        self,
        snapshot: SafetySnapshot,
        options: RestoreOptions,
        logger: OperationLogger
    ) -> None:
        logger.step_start("snapshot", f"Creating safety snapshot at {snapshot.root}")
        try:
            snapshot.captured = await run_interruptible(
                self._copy_critical_paths, snapshot.source, snapshot.data_dir
            )
            if options.restore_config and self.config_store is not None:
                artifact = snapshot.root / SNAPSHOT_CONFIG_NAME
                try:
                    snapshot.config_artifact = await self.config_store.export_to(artifact)
                except ConfigStoreError as e:
                    logger.warning(f"Current configuration could not be saved: {e.message}")
            await asyncio.to_thread(snapshot.write_manifest)
        except (Exception, asyncio.CancelledError):
            # Nothing has been touched yet, so a partial snapshot is of no use
            await asyncio.to_thread(shutil.rmtree, snapshot.root, True)
            logger.info(f"Removed incomplete safety snapshot {snapshot.root}")
            raise
        logger.step_complete("snapshot", f"Safety snapshot holds {len(snapshot.captured)} item(s)")

    def _copy_critical_paths(
        self, target: Path, data_dir: Path, stop: Optional[threading.Event] = None
    ) -> List[str]:
        copy = checked_copy(stop)
        data_dir.mkdir(parents=True, exist_ok=True)
        captured = []
        for relative in self.profile.snapshot_paths:
            source = target / relative
            destination = data_dir / relative
            if source.is_file():
                destination.parent.mkdir(parents=True, exist_ok=True)
                copy(source, destination)
            elif source.is_dir():
                shutil.copytree(source, destination, copy_function=copy, dirs_exist_ok=True)
            else:
                continue
            captured.append(relative)
        return captured

    async def _import_config(
        self,
        source_root: Path,
        snapshot: SafetySnapshot,
        ledger: RollbackLedger,
        logger: OperationLogger
    ) -> None:
        if self.config_store is None:
            logger.warning(f"No configuration store on {self.profile.platform.value}, configuration not restored")
            return
        reg_files = sorted((source_root / REG_DIR_NAME).glob("*.reg"))
        if not reg_files:
            logger.warning("Package has no configuration export, registry left untouched")
            return

        if snapshot.config_artifact is not None:
            artifact = snapshot.config_artifact
            ledger.record_compensation(
                "Re-imported previous configuration",
                lambda: self.config_store.import_from(artifact)
            )

        logger.step_start("config", "Importing registry configuration")
        for reg_file in reg_files:
            await self.config_store.import_from(reg_file)
        logger.step_complete("config", f"Imported {len(reg_files)} registry file(s)")

    async def _replace_data(
        self,
        data_source: Path,
        target: Path,
        snapshot: SafetySnapshot,
        ledger: RollbackLedger,
        options: RestoreOptions,
        logger: OperationLogger
    ) -> None:
        ledger.record_tree_restore(target, snapshot.data_dir)

        logger.step_start("clear", f"Clearing {target}")
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        await self.file_ops.clear_directory(target, options.retry)
        logger.step_complete("clear", "Target cleared")
        logger.progress("clear", 0.45)

        logger.step_start("copy", f"Copying data into {target}")
        outcome = await CopyStrategy(self.runner, logger=logger.child("copy")).mirror(
            data_source,
            target,
            deadline=options.mirror_timeout,
            log_file=ledger.open() / "restore_mirror.log",
        )
        if not outcome.success:
            raise CopyFailed(
                f"No files could be copied into {target}",
                details={"files_found": outcome.files_found, "failures": outcome.failures[:50]}
            )
        logger.step_complete("copy", f"Data copied with {outcome.method}")

    def verify(self, target: Path) -> None:
        """
        Check that restored data contains a non-trivial critical file.

        Raises:
            VerificationFailed: If no threshold is met
        """
        for relative, minimum in self.profile.verification_thresholds:
            candidate = Path(target) / relative
            if candidate.is_file() and candidate.stat().st_size > minimum:
                return
        expected = ", ".join(f"{relative} > {minimum} bytes" for relative, minimum in self.profile.verification_thresholds)
        raise VerificationFailed(f"Restored data failed verification, expected one of: {expected}")

    async def _roll_back(
        self,
        ledger: RollbackLedger,
        options: RestoreOptions,
        logger: OperationLogger
    ) -> Optional[RollbackReport]:
        if not options.enable_rollback:
            logger.warning("Rollback disabled, target left as is")
            return None
        # The cleanup step owns the service restart
        return await ledger.rollback(manage_service=False)

    async def _settle_snapshot_after_failure(
        self,
        snapshot: SafetySnapshot,
        report: Optional[RollbackReport],
        logger: OperationLogger
    ) -> bool:
        if report is not None and not report.requires_manual_review:
            await self._discard_snapshot(snapshot, logger)
            return False
        logger.warning(f"Safety snapshot kept for manual recovery: {snapshot.root}")
        return True

    async def _discard_snapshot(self, snapshot: SafetySnapshot, logger: OperationLogger) -> None:
        try:
            await self.file_ops.remove_tree(snapshot.root)
            logger.info("Safety snapshot removed")
        except Exception as e:
            logger.warning(f"Could not remove safety snapshot {snapshot.root}: {e}")

    async def _restart_service(self, logger: OperationLogger) -> None:
        try:
            logger.step_start("start_service", f"Starting {self.service.display_name}")
            await self.service.start()
            logger.step_complete("start_service", "Service running")
        except Exception as e:
            logger.step_failed("start_service", str(e))

    async def recover(
        self,
        snapshot: Union[SafetySnapshot, Path],
        logger: OperationLogger,
        restart_service: bool = True
    ) -> RollbackReport:
        """
        Roll a target back to a safety snapshot left by a failed or timed-out restore.

        Args:
            snapshot: The snapshot, or its root directory
            logger: Operation logger receiving every step
            restart_service: Start the service once the data is back

        Returns:
            RollbackReport of the recovery
        """
        if not isinstance(snapshot, SafetySnapshot):
            snapshot = await asyncio.to_thread(SafetySnapshot.load, Path(snapshot))

        logger.info(f"Recovering {snapshot.source} from {snapshot.root}")
        ledger = RollbackLedger(logger.child("rollback"), self.file_ops, self.service)
        ledger.record_tree_restore(snapshot.source, snapshot.data_dir)
        if (
            self.config_store is not None
            and snapshot.config_artifact is not None
            and snapshot.config_artifact.is_file()
        ):
            artifact = snapshot.config_artifact
            ledger.record_compensation(
                "Re-imported previous configuration",
                lambda: self.config_store.import_from(artifact)
            )

        try:
            if await self.service.is_running():
                await self.service.stop()
            report = await ledger.rollback(manage_service=False)
        finally:
            await ledger.close()
            if restart_service:
                await self._restart_service(logger)

        if not report.requires_manual_review:
            await self._discard_snapshot(snapshot, logger)
        return report
