"""
Remote restore pipeline.

Replays the restore on a Linux host over a RemoteTransport in six stages:
package, create scratch, upload, stop service, extract and copy, restart and
clean up. Every remote command has an explicit contract: a non-zero exit is
fatal unless the step allows failure, in which case it is logged as a warning
and the pipeline carries on.

Service and account names are found by heuristic probing: the first
candidate that answers wins, and no match is not an error.
"""

import asyncio
import shlex
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from plex_backup.backup.package import create_archive, find_component_root, is_archive
from plex_backup.core.exceptions import OperationFailed, RemoteCommandFailed, ValidationFailed
from plex_backup.models.config import DATA_DIR_NAME, RemoteTarget
from plex_backup.transfer.base import CommandResult, RemoteSession, RemoteTransport
from plex_backup.utils.helpers import format_bytes, timestamp_slug
from plex_backup.utils.logging import OperationLogger

REMOTE_ARCHIVE_NAME = "backup.zip"
REMOTE_EXTRACT_DIR = "extracted"
SNAPSHOT_MARKER = "snapshot-saved"

STAGE_FRACTIONS = {
    "package": 0.15,
    "scratch": 0.25,
    "upload": 0.50,
    "stop_service": 0.65,
    "apply": 0.85,
    "finish": 1.0,
}


def q(value: str) -> str:
    return shlex.quote(str(value))


@dataclass
class RemoteRestoreReport:
    """What a successful remote restore did."""
    scratch_dir: str
    scratch_removed: bool
    service_name: Optional[str] = None
    owner: Optional[str] = None


class RemoteRestorePipeline:
    """Restores a backup package onto a remote host."""

    def __init__(
        self,
        transport: RemoteTransport,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        local_temp_dir: Optional[Path] = None
    ):
        self.transport = transport
        self._sleep = sleep
        self.local_temp_dir = Path(local_temp_dir or tempfile.gettempdir())

    async def run(
        self,
        package_path: Path,
        target: RemoteTarget,
        logger: OperationLogger
    ) -> RemoteRestoreReport:
        """
        Run the six stages.

        Args:
            package_path: Package directory or zip archive
            target: Remote host and paths
            logger: Operation logger receiving every step

        Returns:
            RemoteRestoreReport

        Raises:
            OperationFailed: With ``details["remote_scratch"]`` set when the
                remote scratch directory was kept for inspection
        """
        ts = timestamp_slug(datetime.now())
        scratch = f"{target.scratch_path.rstrip('/')}/plex_restore_{ts}"
        session: Optional[RemoteSession] = None
        local_archive: Optional[Path] = None
        temporary_archive = False
        scratch_created = False
        stopped_service: Optional[str] = None
        remote_snapshot: Optional[str] = None

        try:
            # 1. Package
            logger.step_start("package", f"Preparing {package_path} for transfer")
            local_archive, temporary_archive = await self._package(Path(package_path), ts)
            logger.step_complete("package", f"Package ready: {local_archive.name}")
            logger.progress("package", STAGE_FRACTIONS["package"])

            session = await self.transport.connect(target)
            logger.info(f"Connected to {session.description}")

            # 2. Scratch directory
            logger.step_start("scratch", f"Creating remote scratch directory {scratch}")
            await self._run(session, f"mkdir -p {q(scratch)}", "scratch", logger)
            scratch_created = True
            logger.step_complete("scratch", "Scratch directory created")
            logger.progress("scratch", STAGE_FRACTIONS["scratch"])

            # 3. Upload
            remote_archive = f"{scratch}/{REMOTE_ARCHIVE_NAME}"
            logger.step_start("upload", f"Uploading {local_archive.name}")
            await self.transport.upload_file(
                session, local_archive, remote_archive, self._upload_progress(logger)
            )
            logger.step_complete("upload", f"Uploaded {format_bytes(local_archive.stat().st_size)}")
            logger.progress("upload", STAGE_FRACTIONS["upload"])

            # 4. Stop service
            service_name = None
            if target.manage_service:
                service_name = await self._detect_service(session, target, logger)
                logger.step_start("stop_service", f"Stopping {service_name}")
                result = await self._run(
                    session, f"systemctl stop {q(service_name)}", "stop_service", logger,
                    sudo=True, allow_failure=True
                )
                if result.ok:
                    stopped_service = service_name
                    logger.step_complete("stop_service", f"{service_name} stopped")
                if target.service_settle_seconds:
                    await self._sleep(target.service_settle_seconds)
            logger.progress("stop_service", STAGE_FRACTIONS["stop_service"])

            # 5. Extract, snapshot, clear, copy, fix ownership
            extracted = await self._extract(session, target, scratch, remote_archive, logger)
            remote_snapshot = await self._save_existing(session, target, scratch, ts, logger)
            owner = await self._apply(session, target, extracted, logger)
            logger.progress("apply", STAGE_FRACTIONS["apply"])

            # 6. Restart and clean up
            if target.manage_service and service_name:
                logger.step_start("start_service", f"Starting {service_name}")
                result = await self._run(
                    session, f"systemctl start {q(service_name)}", "start_service", logger,
                    sudo=True, allow_failure=True
                )
                stopped_service = None
                if result.ok:
                    logger.step_complete("start_service", f"{service_name} started")

            result = await self._run(
                session, f"rm -rf {q(scratch)}", "cleanup", logger,
                sudo=True, allow_failure=True, timeout=target.copy_timeout
            )
            logger.progress("finish", STAGE_FRACTIONS["finish"], "Remote restore completed")
            logger.info(f"Remote restore to {target.host} completed")
            return RemoteRestoreReport(
                scratch_dir=scratch,
                scratch_removed=result.ok,
                service_name=service_name,
                owner=owner,
            )

        except Exception as e:
            logger.error(f"Remote restore failed: {e}")
            if session is not None and stopped_service:
                await self._restart_after_failure(session, stopped_service, logger)
            details = {}
            if scratch_created:
                details["remote_scratch"] = scratch
                logger.warning(f"Remote scratch directory kept for inspection: {scratch}")
            if remote_snapshot is not None:
                details["remote_snapshot"] = remote_snapshot
                logger.warning(f"Previous remote data saved at {remote_snapshot}")
            raise OperationFailed(
                f"Remote restore failed: {e}", cause=e, log=logger.log, details=details
            ) from e

        finally:
            if session is not None:
                await self.transport.close(session)
            if temporary_archive and local_archive is not None:
                local_archive.unlink(missing_ok=True)

    async def _package(self, package_path: Path, ts: str):
        if package_path.is_dir():
            archive = self.local_temp_dir / f"plex_backup_transfer_{ts}.zip"
            root = await asyncio.to_thread(find_component_root, package_path)
            await asyncio.to_thread(create_archive, root, archive)
            return archive, True
        if is_archive(package_path):
            return package_path, False
        raise ValidationFailed(
            f"Not a backup package: {package_path}", failed_checks=["package is neither a directory nor a zip archive"]
        )

    def _upload_progress(self, logger: OperationLogger):
        start = STAGE_FRACTIONS["scratch"]
        span = STAGE_FRACTIONS["upload"] - start

        def on_bytes(sent: int, total: int) -> None:
            fraction = sent / total if total else 1.0
            logger.progress(
                "upload", start + span * fraction,
                f"Uploaded {format_bytes(sent)} of {format_bytes(total)}"
            )

        return on_bytes

    async def _extract(
        self,
        session: RemoteSession,
        target: RemoteTarget,
        scratch: str,
        remote_archive: str,
        logger: OperationLogger
    ) -> str:
        extracted = f"{scratch}/{REMOTE_EXTRACT_DIR}"
        logger.step_start("extract", "Extracting package on remote host")
        await self._run(
            session, f"unzip -q -o {q(remote_archive)} -d {q(extracted)}", "extract", logger,
            timeout=target.copy_timeout
        )
        logger.step_complete("extract", "Package extracted")
        return extracted

    async def _save_existing(
        self,
        session: RemoteSession,
        target: RemoteTarget,
        scratch: str,
        ts: str,
        logger: OperationLogger
    ) -> Optional[str]:
        """Copy the current remote data into the scratch directory; None when nothing was saved."""
        data = target.data_path
        snapshot = f"{scratch}/current_backup_{ts}"
        # Best effort: the target may not exist yet
        result = await self._run(
            session,
            f"if [ -d {q(data)} ]; then cp -a {q(data)} {q(snapshot)} && echo {SNAPSHOT_MARKER}; fi",
            "snapshot", logger, sudo=True, allow_failure=True, timeout=target.copy_timeout
        )
        if result.ok and SNAPSHOT_MARKER in result.stdout:
            logger.info(f"Existing remote data saved to {snapshot}")
            return snapshot
        return None

    async def _apply(
        self,
        session: RemoteSession,
        target: RemoteTarget,
        extracted: str,
        logger: OperationLogger
    ) -> Optional[str]:
        data = target.data_path
        result = await self._run(
            session, f"find {q(extracted)} -maxdepth 2 -type d -name {DATA_DIR_NAME}", "apply", logger
        )
        sources = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not sources:
            raise RemoteCommandFailed(
                f"Extracted package has no {DATA_DIR_NAME} folder", command=result.command
            )

        logger.step_start("apply", f"Replacing {data}")
        await self._run(session, f"mkdir -p {q(data)}", "apply", logger, sudo=True)
        await self._run(
            session, f"find {q(data)} -mindepth 1 -maxdepth 1 -exec rm -rf {{}} +", "apply", logger,
            sudo=True, timeout=target.copy_timeout
        )
        await self._run(
            session, f"cp -a {q(sources[0])}/. {q(data)}/", "apply", logger,
            sudo=True, timeout=target.copy_timeout
        )
        logger.step_complete("apply", "Remote data replaced")

        owner = await self._detect_owner(session, target, logger)
        if owner:
            await self._run(
                session, f"chown -R {q(owner)}:{q(owner)} {q(data)}", "ownership", logger,
                sudo=True, allow_failure=True, timeout=target.copy_timeout
            )
        else:
            logger.warning(
                f"None of {', '.join(target.owner_candidates)} exists on the host; ownership left unchanged"
            )
        return owner

    async def _detect_service(self, session: RemoteSession, target: RemoteTarget, logger: OperationLogger) -> str:
        candidates = list(dict.fromkeys([*target.service_candidates, target.service_name]))
        for candidate in candidates:
            result = await self._run(
                session,
                f"systemctl is-active {q(candidate)} || systemctl is-enabled {q(candidate)}",
                "stop_service", logger, allow_failure=True, warn=False
            )
            if result.ok:
                logger.info(f"Detected service {candidate}")
                return candidate
        logger.info(f"No service detected, using {target.service_name}")
        return target.service_name

    async def _detect_owner(self, session: RemoteSession, target: RemoteTarget, logger: OperationLogger) -> Optional[str]:
        for candidate in target.owner_candidates:
            result = await self._run(
                session, f"id -u {q(candidate)}", "ownership", logger, allow_failure=True, warn=False
            )
            if result.ok:
                return candidate
        return None

    async def _restart_after_failure(self, session: RemoteSession, service_name: str, logger: OperationLogger):
        try:
            await self._run(
                session, f"systemctl start {q(service_name)}", "start_service", logger,
                sudo=True, allow_failure=True
            )
            logger.info(f"Restarted {service_name} after failure")
        except Exception as e:
            logger.error(f"Could not restart {service_name}: {e}")

    async def _run(
        self,
        session: RemoteSession,
        command: str,
        stage: str,
        logger: OperationLogger,
        sudo: bool = False,
        allow_failure: bool = False,
        warn: bool = True,
        timeout: Optional[float] = None
    ) -> CommandResult:
        result = await self.transport.execute_command(
            session,
            command,
            timeout=timeout or session.target.command_timeout,
            allow_failure=allow_failure,
            sudo=sudo,
        )
        if not result.ok:
            message = f"Command exited with status {result.exit_status}, continuing: {command}"
            if warn:
                logger.warning(message, stage=stage, details={"stderr": result.stderr.strip()})
            else:
                logger.debug(message, stage=stage)
        return result
