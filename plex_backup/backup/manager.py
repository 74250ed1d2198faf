"""
Backup orchestration.

BackupOrchestrator runs one backup: optionally stop the service, export the
registry configuration, mirror the data directory into the package, restart
the service. Every file and folder it creates is recorded in a
RollbackLedger so a failed backup leaves nothing behind.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from plex_backup.backup.copy import CopyStrategy
from plex_backup.backup.fileops import RetryingFileOps
from plex_backup.backup.ledger import RollbackLedger
from plex_backup.backup.package import PackageLayout, describe_package
from plex_backup.core.exceptions import CopyFailed, OperationFailed
from plex_backup.models.config import ApplicationProfile, BackupOptions
from plex_backup.models.session import BackupPackage
from plex_backup.platform.config_store import RegistryConfigStore
from plex_backup.platform.process import ExternalProcess
from plex_backup.platform.service import ManagedService
from plex_backup.utils.logging import OperationLogger


class BackupOrchestrator:
    """Drives a full backup of the application's configuration and data."""

    def __init__(
        self,
        profile: ApplicationProfile,
        runner: ExternalProcess,
        service: ManagedService,
        file_ops: Optional[RetryingFileOps] = None,
        config_store: Optional[RegistryConfigStore] = None
    ):
        self.profile = profile
        self.runner = runner
        self.service = service
        self.file_ops = file_ops or RetryingFileOps()
        if config_store is None and profile.has_config_store:
            config_store = RegistryConfigStore(runner, profile.registry_key)
        self.config_store = config_store

    async def run(self, options: BackupOptions, logger: OperationLogger) -> BackupPackage:
        """
        Run the backup.

        Args:
            options: What to back up and where
            logger: Operation logger receiving every step

        Returns:
            Descriptor of the written package

        Raises:
            OperationFailed: Carrying the original error and the rollback report
        """
        layout = PackageLayout(options.destination_root, options.timestamp or datetime.now())
        ledger = RollbackLedger(logger.child("rollback"), self.file_ops, self.service)
        ledger.open()
        ledger.destination_root = layout.root
        service_stopped = False

        logger.info(f"Starting backup to {layout.root}")
        try:
            ledger.service_was_running = await self.service.is_running()

            if options.stop_service and ledger.service_was_running:
                logger.step_start("stop_service", f"Stopping {self.service.display_name}")
                await self.service.stop()
                service_stopped = True
                logger.step_complete("stop_service", "Service stopped")
            logger.progress("stop_service", 0.1)

            await asyncio.to_thread(ledger.ensure_directory, layout.root)

            if options.include_config and self.config_store is None:
                logger.warning(
                    f"No configuration store on {self.profile.platform.value}, configuration not backed up"
                )
            elif options.include_config:
                await self._export_config(layout, ledger, logger)
                ledger.config_done = True
            logger.progress("config", 0.35)

            if options.include_data:
                await self._mirror_data(layout, ledger, options, logger)
                ledger.data_done = True
            logger.progress("data", 0.9)

            if service_stopped:
                logger.step_start("start_service", f"Restarting {self.service.display_name}")
                await self.service.start()
                service_stopped = False
                logger.step_complete("start_service", "Service restarted")

        except Exception as e:
            logger.error(f"Backup failed: {e}")
            report = None
            if options.enable_rollback:
                report = await ledger.rollback()
                # Rollback put the service back the way it was
                service_stopped = False
            raise OperationFailed(
                f"Backup failed: {e}", cause=e, rollback_report=report, log=logger.log
            ) from e

        finally:
            if service_stopped:
                await self._restart_best_effort(logger)
            await ledger.close()

        package = await asyncio.to_thread(describe_package, layout.root)
        logger.info(f"Backup completed: {package.name}")
        logger.progress("done", 1.0, "Backup completed")
        return package

    async def _export_config(self, layout: PackageLayout, ledger: RollbackLedger, logger: OperationLogger):
        logger.step_start("config", "Exporting registry configuration")
        await asyncio.to_thread(ledger.ensure_directory, layout.reg_dir)

        if layout.reg_file.exists():
            saved = await asyncio.to_thread(ledger.save_copy, layout.reg_file)
            logger.info(f"Saved existing {layout.reg_file.name} to {saved}")
        else:
            ledger.record_file_created(layout.reg_file)

        await self.config_store.export_to(layout.reg_file)
        logger.step_complete("config", f"Registry exported to {layout.reg_file.name}")

    async def _mirror_data(
        self,
        layout: PackageLayout,
        ledger: RollbackLedger,
        options: BackupOptions,
        logger: OperationLogger
    ):
        source = self.profile.data_dir
        if not source.is_dir():
            raise CopyFailed(f"Data directory not found: {source}")

        logger.step_start("data", f"Mirroring {source}")
        if await asyncio.to_thread(ledger.ensure_directory, layout.data_dir):
            ledger.record_tree_created(layout.data_dir)
        await asyncio.to_thread(ledger.ensure_directory, layout.logs_dir)

        if layout.log_file.exists():
            await asyncio.to_thread(ledger.save_copy, layout.log_file)
        else:
            ledger.record_file_created(layout.log_file)

        outcome = await CopyStrategy(self.runner, logger=logger.child("copy")).mirror(
            source,
            layout.data_dir,
            exclude_paths=self._excludes(options),
            deadline=options.mirror_timeout,
            log_file=layout.log_file,
        )
        if not outcome.success:
            raise CopyFailed(
                f"No files could be copied from {source}",
                details={"files_found": outcome.files_found, "failures": outcome.failures[:50]}
            )
        logger.step_complete("data", f"Data mirrored with {outcome.method}")

    def _excludes(self, options: BackupOptions) -> List[Path]:
        names = list(self.profile.mirror_excludes)
        if not options.include_logs:
            names.append(self.profile.logs_dir_name)
        return [self.profile.data_dir / name for name in names]

    async def _restart_best_effort(self, logger: OperationLogger) -> None:
        try:
            await self.service.start()
            logger.info("Service restarted")
        except Exception as e:
            logger.error(f"Could not restart {self.service.display_name}: {e}")
