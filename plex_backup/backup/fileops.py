"""
Filesystem operations that survive transient contention.

The managed service can hold file handles for a short while after it has
been told to stop, and its data directory may contain read-only or hidden
entries. RetryingFileOps clears such trees with bounded, linearly backed-off
retries before giving up with TargetLocked.
"""

import asyncio
import logging
import os
import shutil
import stat
import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from plex_backup.core.exceptions import TargetLocked
from plex_backup.models.config import RetryPolicy

logger = logging.getLogger(__name__)

FILE_ATTRIBUTE_NORMAL = 0x80

PathLike = Union[str, Path]


class CopyInterrupted(Exception):
    """Raised inside a worker thread once its operation has been cancelled."""


async def run_interruptible(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run ``func(*args, stop=event, **kwargs)`` in a worker thread.

    Cancelling the awaiting task sets ``stop`` and waits for the thread to
    return before re-raising, so no file work outlives the cancellation.
    ``func`` must check ``stop`` between units of work.
    """
    stop = threading.Event()
    task = asyncio.ensure_future(asyncio.to_thread(func, *args, stop=stop, **kwargs))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        stop.set()
        try:
            await task
        except Exception as e:
            logger.debug(f"Interrupted {getattr(func, '__name__', func)}: {e}")
        raise


def checked_copy(stop: Optional[threading.Event]) -> Callable[[str, str], Any]:
    """A ``shutil.copy2`` replacement that refuses to start once stop is set."""

    def copy(src, dst, **kwargs):
        if stop is not None and stop.is_set():
            raise CopyInterrupted(f"Copy of {src} cancelled")
        return shutil.copy2(src, dst, **kwargs)

    return copy


class RetryingFileOps:
    """Directory clearing and copying with retry on contention."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def clear_directory(self, path: PathLike, policy: Optional[RetryPolicy] = None) -> None:
        """
        Remove everything inside a directory, keeping the directory itself.

        Args:
            path: Directory to clear; a missing directory is already clear
            policy: Retry policy overriding the instance default

        Raises:
            TargetLocked: If entries remain after the last attempt
        """
        policy = policy or self.policy
        path = Path(path)
        if not path.exists():
            return

        for attempt in range(1, policy.max_attempts + 1):
            try:
                await run_interruptible(self._clear_once, path)
                if attempt > 1:
                    logger.info(f"Cleared {path} on attempt {attempt}")
                return
            except OSError as e:
                if attempt == policy.max_attempts:
                    logger.error(f"Giving up on {path} after {attempt} attempts: {e}")
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} to clear {path} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise TargetLocked(str(path), policy.max_attempts)

    async def remove_tree(self, path: PathLike, policy: Optional[RetryPolicy] = None) -> None:
        """Clear a directory with retries, then remove the directory itself."""
        path = Path(path)
        if not path.exists():
            return
        await self.clear_directory(path, policy)
        await asyncio.to_thread(self.remove_dir, path)

    async def copy_tree(self, source: PathLike, destination: PathLike) -> None:
        """Copy a directory tree over an existing or missing destination."""
        await asyncio.to_thread(
            shutil.copytree, str(source), str(destination), dirs_exist_ok=True
        )

    def clear_attributes(self, path: Path) -> None:
        """Make every entry below path writable so it can be deleted."""
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                self._make_writable(Path(root) / name)
        self._make_writable(path)

    def _make_writable(self, entry: Path) -> None:
        try:
            if entry.is_symlink():
                return
            mode = entry.stat().st_mode
            wanted = mode | stat.S_IREAD | stat.S_IWRITE
            if entry.is_dir():
                wanted |= stat.S_IEXEC
            if wanted != mode:
                os.chmod(entry, wanted)
            if os.name == "nt":
                import ctypes
                ctypes.windll.kernel32.SetFileAttributesW(str(entry), FILE_ATTRIBUTE_NORMAL)
        except OSError as e:
            # Deletion reports the real failure
            logger.debug(f"Could not reset attributes on {entry}: {e}")

    def remove_file(self, path: Path) -> None:
        path.unlink()

    def remove_dir(self, path: Path) -> None:
        path.rmdir()

    def _clear_once(self, path: Path, stop: Optional[threading.Event] = None) -> None:
        self.clear_attributes(path)
        for root, dirs, files in os.walk(path, topdown=False):
            if stop is not None and stop.is_set():
                raise CopyInterrupted(f"Clearing {path} cancelled")
            for name in files:
                self.remove_file(Path(root) / name)
            for name in dirs:
                directory = Path(root) / name
                if directory.is_symlink():
                    self.remove_file(directory)
                else:
                    self.remove_dir(directory)
