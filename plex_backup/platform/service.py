"""
Service control for the managed application.

The local controller finds the application's processes with psutil, stops
them (terminate, then kill after a grace period) and starts the first
executable found on disk. All three operations tolerate the service already
being in the requested state.
"""

import asyncio
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Sequence

import psutil

from plex_backup.core.exceptions import ServiceControlError
from plex_backup.models.config import ApplicationProfile

logger = logging.getLogger(__name__)


class ServiceController(ABC):
    """Stop, start and query the managed application."""

    @abstractmethod
    async def stop(self, names: Sequence[str]) -> None:
        pass

    @abstractmethod
    async def start(self, paths: Sequence[Path]) -> None:
        pass

    @abstractmethod
    async def is_running(self, names: Sequence[str]) -> bool:
        pass


def _process_matches(process_name: str, names: Sequence[str]) -> bool:
    stem = process_name[:-4] if process_name.lower().endswith(".exe") else process_name
    return any(stem.lower() == name.lower() for name in names)


class ProcessServiceController(ServiceController):
    """Controls the application as a set of OS processes."""

    def __init__(self, stop_timeout: float = 5.0, process_names: Sequence[str] = ()):
        self.stop_timeout = stop_timeout
        self.process_names = tuple(process_names)

    def _find(self, names: Sequence[str]) -> List[psutil.Process]:
        found = []
        for process in psutil.process_iter(["name"]):
            name = process.info.get("name") or ""
            if _process_matches(name, names):
                found.append(process)
        return found

    async def is_running(self, names: Sequence[str]) -> bool:
        processes = await asyncio.to_thread(self._find, names)
        return bool(processes)

    def _stop_blocking(self, names: Sequence[str]) -> int:
        processes = self._find(names)
        if not processes:
            return 0

        for process in processes:
            try:
                process.terminate()
            except psutil.NoSuchProcess:
                pass

        _gone, alive = psutil.wait_procs(processes, timeout=self.stop_timeout)
        for process in alive:
            try:
                process.kill()
            except psutil.NoSuchProcess:
                pass

        _gone, alive = psutil.wait_procs(alive, timeout=self.stop_timeout)
        if alive:
            pids = ", ".join(str(process.pid) for process in alive)
            raise ServiceControlError(f"Processes did not exit: {pids}")
        return len(processes)

    async def stop(self, names: Sequence[str]) -> None:
        try:
            stopped = await asyncio.to_thread(self._stop_blocking, names)
        except psutil.Error as e:
            raise ServiceControlError(f"Failed to stop {', '.join(names)}: {e}") from e

        if stopped:
            logger.info(f"Stopped {stopped} process(es) of {', '.join(names)}")
        else:
            logger.debug(f"{', '.join(names)} already stopped")

    async def start(self, paths: Sequence[Path]) -> None:
        if self.process_names and await self.is_running(self.process_names):
            logger.debug("Service already running, not starting another instance")
            return

        executable = next((Path(path) for path in paths if Path(path).is_file()), None)
        if executable is None:
            raise ServiceControlError(
                "Application executable not found in: " + ", ".join(str(p) for p in paths)
            )

        kwargs = {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            subprocess.Popen([str(executable)], **kwargs)
        except OSError as e:
            raise ServiceControlError(f"Failed to start {executable}: {e}") from e
        logger.info(f"Started {executable}")


class ManagedService:
    """Binds a controller to the profile's process names and executables."""

    def __init__(self, controller: ServiceController, profile: ApplicationProfile):
        self.controller = controller
        self.profile = profile

    @property
    def display_name(self) -> str:
        return self.profile.process_names[0] if self.profile.process_names else "service"

    async def stop(self) -> None:
        await self.controller.stop(self.profile.process_names)

    async def start(self) -> None:
        await self.controller.start(self.profile.executable_paths)

    async def is_running(self) -> bool:
        return await self.controller.is_running(self.profile.process_names)
