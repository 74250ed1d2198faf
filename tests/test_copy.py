"""
Unit tests for the mirror copy strategy and the mirror tools.
"""

import asyncio
from pathlib import Path

import pytest

from plex_backup.backup import copy as copy_module
from plex_backup.backup.copy import FALLBACK_METHOD, CopyStrategy
from plex_backup.platform.mirror_tools import RobocopyTool, RsyncTool
from plex_backup.platform.process import ProcessResult


@pytest.fixture
def source(tmp_path: Path) -> Path:
    root = tmp_path / "source"
    (root / "sub").mkdir(parents=True)
    (root / "Cache").mkdir()
    (root / "one.txt").write_text("1")
    (root / "sub" / "two.txt").write_text("22")
    (root / "Cache" / "skip.bin").write_bytes(b"x")
    return root


class TestCopyStrategy:
    """Test cases for CopyStrategy.mirror."""

    @pytest.mark.asyncio
    async def test_primary_tool_success(self, runner, op_logger, source, tmp_path):
        destination = tmp_path / "dest"
        log_file = tmp_path / "logs" / "mirror.txt"
        strategy = CopyStrategy(runner, tool=RsyncTool(), logger=op_logger)

        outcome = await strategy.mirror(source, destination, [source / "Cache"], deadline=60, log_file=log_file)

        assert outcome.success
        assert outcome.method == "rsync"
        assert not outcome.used_fallback
        assert (destination / "sub" / "two.txt").read_text() == "22"
        assert not (destination / "Cache").exists()
        assert log_file.exists()
        assert runner.calls[0][2] == 60

    @pytest.mark.asyncio
    async def test_bad_exit_code_falls_back(self, runner, op_logger, source, tmp_path):
        runner.on("rsync", lambda args, timeout: 23)
        destination = tmp_path / "dest"
        strategy = CopyStrategy(runner, tool=RsyncTool(), logger=op_logger)

        outcome = await strategy.mirror(source, destination, [source / "Cache"])

        assert outcome.success
        assert outcome.method == FALLBACK_METHOD
        assert "exit code 23" in outcome.primary_error
        assert outcome.files_found == 2
        assert outcome.files_copied == 2
        assert not (destination / "Cache").exists()
        assert op_logger.log.warning_count == 1

    @pytest.mark.asyncio
    async def test_deadline_exceeded_falls_back(self, runner, op_logger, source, tmp_path):
        async def hang(args, timeout):
            await asyncio.sleep(30)
            return 0

        runner.on("robocopy", hang)
        destination = tmp_path / "dest"
        log_file = tmp_path / "mirror.txt"
        strategy = CopyStrategy(runner, tool=RobocopyTool(), logger=op_logger)

        outcome = await strategy.mirror(source, destination, deadline=0.05, log_file=log_file)

        assert outcome.used_fallback
        assert outcome.files_copied <= outcome.files_found
        assert outcome.files_copied == 3
        assert "did not finish" in outcome.primary_error
        assert "Files copied: 3" in log_file.read_text()

    @pytest.mark.asyncio
    async def test_fallback_continues_past_failed_files(self, runner, op_logger, source, tmp_path, monkeypatch):
        runner.on("rsync", lambda args, timeout: 12)
        real_copy2 = copy_module.shutil.copy2

        def flaky_copy(src, dst):
            if Path(src).name == "one.txt":
                raise PermissionError(13, "in use", str(src))
            return real_copy2(src, dst)

        monkeypatch.setattr(copy_module.shutil, "copy2", flaky_copy)
        strategy = CopyStrategy(runner, tool=RsyncTool(), logger=op_logger)

        outcome = await strategy.mirror(source, tmp_path / "dest", [source / "Cache"])

        assert outcome.success
        assert outcome.files_found == 2
        assert outcome.files_copied == 1
        assert len(outcome.failures) == 1
        assert op_logger.log.warning_count == 2

    @pytest.mark.asyncio
    async def test_fallback_with_nothing_copied_fails(self, runner, op_logger, tmp_path):
        runner.on("rsync", lambda args, timeout: 23)
        empty = tmp_path / "empty"
        empty.mkdir()
        strategy = CopyStrategy(runner, tool=RsyncTool(), logger=op_logger)

        outcome = await strategy.mirror(empty, tmp_path / "dest")

        assert not outcome.success
        assert outcome.files_found == 0


class TestMirrorTools:
    """Test cases for the mirror tool command lines and exit codes."""

    def test_robocopy_arguments(self, tmp_path):
        args = RobocopyTool().build_args(
            tmp_path / "src", tmp_path / "dst", [tmp_path / "src" / "Cache"], tmp_path / "log.txt"
        )
        assert args[:5] == [str(tmp_path / "src"), str(tmp_path / "dst"), "/MIR", "/R:1", "/W:1"]
        assert args[5:7] == ["/XD", str(tmp_path / "src" / "Cache")]
        assert args[-1] == f"/LOG:{tmp_path / 'log.txt'}"

    def test_robocopy_exit_codes(self):
        tool = RobocopyTool()
        assert all(tool.is_success(code) for code in range(8))
        assert not tool.is_success(8)
        assert not tool.is_success(None)

    def test_rsync_arguments(self, tmp_path):
        source = tmp_path / "src"
        args = RsyncTool().build_args(source, tmp_path / "dst", [source / "Cache", source / "Logs"])
        assert args[:2] == ["-a", "--delete"]
        assert "--exclude=/Cache" in args
        assert "--exclude=/Logs" in args
        assert not any(arg.startswith("--log-file") for arg in args)

    def test_rsync_exit_codes(self):
        tool = RsyncTool()
        assert tool.is_success(0)
        assert tool.is_success(24)
        assert not tool.is_success(23)

    def test_process_result_ok(self):
        assert ProcessResult(name="x", exit_code=0).ok
        assert not ProcessResult(name="x", exit_code=0, timed_out=True).ok
        assert not ProcessResult(name="x").ok
