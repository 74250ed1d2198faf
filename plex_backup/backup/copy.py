"""
Mirror copy with a fast path and a salvaging fallback.

The fast path hands the whole tree to an external mirroring tool and is
all-or-nothing: a bad exit code or a blown deadline counts as failure. The
fallback walks the tree itself and copies file by file, carrying on past
individual failures so that partial progress is kept.
"""

import asyncio
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from plex_backup.backup.fileops import CopyInterrupted, run_interruptible
from plex_backup.core.exceptions import ExternalToolFailed
from plex_backup.models.session import OperationKind
from plex_backup.platform.mirror_tools import MirrorTool, default_mirror_tool
from plex_backup.platform.process import ExternalProcess
from plex_backup.utils.logging import OperationLogger

FALLBACK_METHOD = "file-by-file"


@dataclass
class MirrorOutcome:
    """Result of one mirror call."""
    success: bool
    method: str
    files_found: int = 0
    files_copied: int = 0
    failures: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    primary_error: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.method == FALLBACK_METHOD


class CopyStrategy:
    """Mirrors a directory, external tool first and per-file copy second."""

    def __init__(
        self,
        runner: ExternalProcess,
        tool: Optional[MirrorTool] = None,
        logger: Optional[OperationLogger] = None
    ):
        self.runner = runner
        self.tool = tool or default_mirror_tool()
        self.logger = logger or OperationLogger(OperationKind.BACKUP, "copy")

    async def mirror(
        self,
        source: Path,
        destination: Path,
        exclude_paths: Sequence[Path] = (),
        deadline: Optional[float] = None,
        log_file: Optional[Path] = None
    ) -> MirrorOutcome:
        """
        Make destination an exact copy of source.

        Args:
            source: Directory to copy from
            destination: Directory to copy into, created if missing
            exclude_paths: Directories under source to leave out
            deadline: Seconds the external tool may run before it is killed
            log_file: Where the copy accounting is written

        Returns:
            MirrorOutcome. ``success`` is False only when the fallback copied
            nothing.
        """
        source = Path(source)
        destination = Path(destination)
        await asyncio.to_thread(destination.mkdir, parents=True, exist_ok=True)

        try:
            outcome = await self._run_primary(source, destination, exclude_paths, deadline, log_file)
            self.logger.info(f"Mirrored {source} with {self.tool.name} (exit code {outcome.exit_code})")
            return outcome
        except ExternalToolFailed as e:
            self.logger.warning(f"{e.message}; falling back to file-by-file copy")
            primary_error = e.message

        outcome = await run_interruptible(
            self._copy_files, source, destination, exclude_paths, log_file
        )
        outcome.primary_error = primary_error

        message = f"Fallback copy: {outcome.files_copied} of {outcome.files_found} files copied"
        if outcome.failures:
            self.logger.warning(
                f"{message}, {len(outcome.failures)} failed",
                details={"failures": outcome.failures[:50]}
            )
        else:
            self.logger.info(message)
        return outcome

    async def _run_primary(self, source, destination, exclude_paths, deadline, log_file) -> MirrorOutcome:
        args = self.tool.build_args(source, destination, exclude_paths, log_file)
        result = await self.runner.run(self.tool.name, args, timeout=deadline)

        if result.timed_out:
            raise ExternalToolFailed(
                f"{self.tool.name} did not finish within {deadline}s", timed_out=True
            )
        if not self.tool.is_success(result.exit_code):
            raise ExternalToolFailed(
                f"{self.tool.name} failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                details={"stderr": result.stderr.strip()}
            )

        if log_file is not None and not log_file.exists():
            self._write_log(
                log_file,
                [f"{self.tool.name} mirror of {source} to {destination}", f"Exit code: {result.exit_code}"]
            )
        return MirrorOutcome(success=True, method=self.tool.name, exit_code=result.exit_code)

    def _copy_files(
        self, source, destination, exclude_paths, log_file, stop: Optional[threading.Event] = None
    ) -> MirrorOutcome:
        excluded = {os.path.normcase(os.path.abspath(path)) for path in exclude_paths}
        outcome = MirrorOutcome(success=False, method=FALLBACK_METHOD)
        pending = []

        # Directory structure first, then the files
        for root, dirs, files in os.walk(source):
            dirs[:] = [
                name for name in dirs
                if os.path.normcase(os.path.abspath(os.path.join(root, name))) not in excluded
            ]
            relative = Path(root).relative_to(source)
            target_dir = destination / relative
            try:
                target_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                outcome.failures.append(f"{relative}: {e}")
                continue
            for name in files:
                pending.append((Path(root) / name, target_dir / name))

        outcome.files_found = len(pending)
        for src, dst in pending:
            if stop is not None and stop.is_set():
                raise CopyInterrupted(f"Copy into {destination} cancelled after {outcome.files_copied} files")
            try:
                shutil.copy2(src, dst)
                outcome.files_copied += 1
            except OSError as e:
                outcome.failures.append(f"{src.relative_to(source)}: {e}")

        outcome.success = outcome.files_copied > 0
        if log_file is not None:
            lines = [
                f"File-by-file mirror of {source} to {destination}",
                f"Files found: {outcome.files_found}",
                f"Files copied: {outcome.files_copied}",
            ]
            lines.extend(f"FAILED {failure}" for failure in outcome.failures)
            self._write_log(log_file, lines)
        return outcome

    def _write_log(self, log_file: Path, lines: List[str]) -> None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(log_file, "a", encoding="utf-8") as handle:
                handle.write(f"[{datetime.now():%Y-%m-%d %H:%M:%S}]\n")
                handle.write("\n".join(lines) + "\n")
        except OSError as e:
            self.logger.warning(f"Could not write mirror log {log_file}: {e}")
