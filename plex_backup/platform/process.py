"""
External process capability.

Every external program the engine drives (the mirroring tool, the registry
export and import) goes through the ExternalProcess interface so that the
orchestration logic can be exercised against a scripted fake instead of the
real operating system.
"""

import asyncio
import logging
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of one external process invocation."""
    name: str
    args: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return " ".join([self.name, *self.args])


class ExternalProcess(ABC):
    """Runs a named program with arguments under a timeout."""

    @abstractmethod
    async def run(
        self,
        name: str,
        args: Sequence[str],
        timeout: Optional[float] = None
    ) -> ProcessResult:
        """
        Run a program to completion.

        Args:
            name: Program name or path
            args: Program arguments
            timeout: Seconds to wait before the process is killed

        Returns:
            ProcessResult; a timeout is reported through ``timed_out`` rather
            than raised. Cancelling the awaiting task kills the process.
        """
        pass


class SubprocessRunner(ExternalProcess):
    """Native backend built on asyncio subprocesses."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def _decode(self, data: Optional[bytes]) -> str:
        return data.decode(self.encoding, errors="replace") if data else ""

    async def run(
        self,
        name: str,
        args: Sequence[str],
        timeout: Optional[float] = None
    ) -> ProcessResult:
        executable = shutil.which(name) or name
        args = [str(arg) for arg in args]
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            logger.error(f"Failed to launch {name}: {e}")
            return ProcessResult(name=name, args=args, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{name} exceeded its {timeout}s deadline, terminating")
            await self._terminate(process)
            return ProcessResult(
                name=name,
                args=args,
                exit_code=process.returncode,
                timed_out=True,
                duration=time.monotonic() - start_time
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        return ProcessResult(
            name=name,
            args=args,
            exit_code=process.returncode,
            stdout=self._decode(stdout),
            stderr=self._decode(stderr),
            duration=time.monotonic() - start_time
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
