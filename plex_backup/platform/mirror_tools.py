"""
Mirroring tools used by the copy strategy's fast path.

Each tool knows how to build its command line for a delete-extraneous mirror
and which exit codes mean success.
"""

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence


class MirrorTool(ABC):
    """External directory mirroring program."""

    name: str = ""

    @abstractmethod
    def build_args(
        self,
        source: Path,
        destination: Path,
        excludes: Sequence[Path],
        log_file: Optional[Path] = None
    ) -> List[str]:
        pass

    @abstractmethod
    def is_success(self, exit_code: Optional[int]) -> bool:
        pass

    def available(self) -> bool:
        return shutil.which(self.name) is not None


class RobocopyTool(MirrorTool):
    """Windows robocopy. Exit codes below 8 are success with informational bits."""

    name = "robocopy"

    def build_args(self, source, destination, excludes, log_file=None):
        args = [str(source), str(destination), "/MIR", "/R:1", "/W:1"]
        if excludes:
            args.append("/XD")
            args.extend(str(path) for path in excludes)
        if log_file is not None:
            args.append(f"/LOG:{log_file}")
        return args

    def is_success(self, exit_code):
        return exit_code is not None and 0 <= exit_code <= 7


class RsyncTool(MirrorTool):
    """rsync in archive mode. Exit code 24 (source files vanished) is tolerated."""

    name = "rsync"

    def build_args(self, source, destination, excludes, log_file=None):
        args = ["-a", "--delete"]
        for path in excludes:
            try:
                pattern = "/" + Path(path).relative_to(source).as_posix()
            except ValueError:
                pattern = Path(path).name
            args.append(f"--exclude={pattern}")
        if log_file is not None:
            args.append(f"--log-file={log_file}")
        # Trailing slashes copy the contents of source rather than the directory itself
        args.extend([f"{source}{os.sep}", f"{destination}{os.sep}"])
        return args

    def is_success(self, exit_code):
        return exit_code in (0, 24)


def default_mirror_tool() -> MirrorTool:
    """Mirror tool native to the host platform."""
    return RobocopyTool() if os.name == "nt" else RsyncTool()
