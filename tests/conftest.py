"""
Pytest configuration and fixtures for the Plex Backup Manager tests.

This module provides a scripted stand-in for external processes (the
registry tool and the mirroring tools), an in-memory service controller and
a throwaway application profile rooted in the test's temporary directory.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import pytest

from plex_backup.backup.fileops import RetryingFileOps
from plex_backup.models.config import ApplicationProfile, PlatformKind, RetryPolicy
from plex_backup.models.session import OperationKind
from plex_backup.platform.process import ExternalProcess, ProcessResult
from plex_backup.platform.service import ManagedService, ServiceController
from plex_backup.utils.logging import OperationLogger

# Exactly 10 bytes, like a minimal registry export
REG_CONTENT = b"REGEDIT4\r\n"


class FakeProcessRunner(ExternalProcess):
    """Scripted ExternalProcess. Handlers may be plain or async callables."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.handlers: Dict[str, Callable] = {}
        self.imported: List[Path] = []

    def on(self, name: str, handler: Callable) -> None:
        self.handlers[name] = handler

    def calls_to(self, name: str) -> List[List[str]]:
        return [args for called, args, _timeout in self.calls if called == name]

    async def run(self, name: str, args: Sequence[str], timeout: Optional[float] = None) -> ProcessResult:
        args = [str(arg) for arg in args]
        self.calls.append((name, args, timeout))
        handler = self.handlers.get(name)
        if handler is None:
            return ProcessResult(name=name, args=args, exit_code=1, stderr=f"{name} not scripted")

        outcome = handler(args, timeout)
        if asyncio.iscoroutine(outcome):
            try:
                outcome = await asyncio.wait_for(outcome, timeout)
            except asyncio.TimeoutError:
                return ProcessResult(name=name, args=args, timed_out=True)
        if isinstance(outcome, int):
            return ProcessResult(name=name, args=args, exit_code=outcome)
        return outcome


def reg_handler(runner: FakeProcessRunner):
    """Emulates ``reg export`` and ``reg import``."""

    def handle(args, _timeout):
        if args[0] == "export":
            Path(args[2]).write_bytes(REG_CONTENT)
            return 0
        if args[0] == "import":
            runner.imported.append(Path(args[1]))
            return 0
        return 1

    return handle


def _mirror(source: Path, destination: Path, excluded: List[str]) -> None:
    if destination.exists():
        for child in destination.iterdir():
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
    ignore = shutil.ignore_patterns(*excluded) if excluded else None
    shutil.copytree(source, destination, dirs_exist_ok=True, ignore=ignore)


def rsync_handler(args, _timeout):
    """Emulates ``rsync -a --delete`` including top-level excludes."""
    excluded = [arg.split("=", 1)[1].strip("/") for arg in args if arg.startswith("--exclude=")]
    _mirror(Path(args[-2]), Path(args[-1]), excluded)
    return 0


def robocopy_handler(args, _timeout):
    """Emulates ``robocopy /MIR`` including ``/XD`` excludes."""
    excluded = []
    if "/XD" in args:
        for arg in args[args.index("/XD") + 1:]:
            if arg.startswith("/"):
                break
            excluded.append(Path(arg).name)
    _mirror(Path(args[0]), Path(args[1]), excluded)
    return 1


class FakeServiceController(ServiceController):
    """In-memory service that is either running or not."""

    def __init__(self, running: bool = True):
        self.running = running
        self.events: List[str] = []
        self.fail_stop = False

    async def stop(self, names):
        if self.fail_stop:
            raise RuntimeError("stop refused")
        self.events.append("stop")
        self.running = False

    async def start(self, paths):
        self.events.append("start")
        self.running = True

    async def is_running(self, names):
        return self.running


@pytest.fixture
def profile(tmp_path: Path) -> ApplicationProfile:
    """Application profile whose data directory lives under tmp_path."""
    return ApplicationProfile(platform=PlatformKind.LINUX, data_dir=tmp_path / "plex_data")


@pytest.fixture
def plex_data(profile: ApplicationProfile) -> Path:
    """A populated data directory: one 1KB data file plus cache and logs."""
    data = profile.data_dir
    (data / "Plug-in Support" / "Databases").mkdir(parents=True)
    (data / "Cache").mkdir()
    (data / "Logs").mkdir()
    (data / "Preferences.xml").write_bytes(b"P" * 1024)
    (data / "Cache" / "thumb.jpg").write_bytes(b"cache")
    (data / "Logs" / "Plex Media Server.log").write_text("log line\n")
    return data


@pytest.fixture
def runner() -> FakeProcessRunner:
    fake = FakeProcessRunner()
    fake.on("reg", reg_handler(fake))
    fake.on("rsync", rsync_handler)
    fake.on("robocopy", robocopy_handler)
    return fake


@pytest.fixture
def service_controller() -> FakeServiceController:
    return FakeServiceController(running=True)


@pytest.fixture
def service(service_controller, profile) -> ManagedService:
    return ManagedService(service_controller, profile)


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def file_ops(fake_sleep) -> RetryingFileOps:
    """File ops with the default policy but no real waiting."""
    return RetryingFileOps(RetryPolicy(), sleep=fake_sleep)


@pytest.fixture
def op_logger() -> OperationLogger:
    return OperationLogger(OperationKind.BACKUP, "tests")


def _read_tree(root: Path) -> Dict[str, bytes]:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def read_tree() -> Callable[[Path], Dict[str, bytes]]:
    """Relative path to content for every file below a directory."""
    return _read_tree
