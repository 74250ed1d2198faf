"""
Tests for the remote restore pipeline and the paramiko transport.
"""

from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from plex_backup.backup.package import PackageLayout, create_archive
from plex_backup.core.exceptions import ErrorKind, OperationFailed, RemoteCommandFailed
from plex_backup.models.config import RemoteTarget
from plex_backup.models.session import OperationKind
from plex_backup.transfer.base import CommandResult, RemoteSession, RemoteTransport
from plex_backup.transfer.remote_restore import RemoteRestorePipeline
from plex_backup.transfer.ssh import ParamikoTransport
from plex_backup.utils.logging import OperationLogger


class ScriptedRemote:
    """Answers remote commands by prefix; unknown commands succeed."""

    def __init__(self):
        self.commands = []
        self.failures = {}
        self.missing_users = set()
        self.existing_data = True

    async def execute(self, session, command, timeout=None, allow_failure=False, sudo=False):
        self.commands.append((command, allow_failure, sudo))
        status, stdout = 0, ""
        for prefix, code in self.failures.items():
            if command.startswith(prefix):
                status = code
        if command.startswith("id -u ") and command.split()[-1] in self.missing_users:
            status = 1
        if command.startswith("find ") and "-name FileBackup" in command:
            stdout = command.split()[1] + "/FileBackup\n"
        if command.startswith("if [ -d ") and self.existing_data:
            stdout = "snapshot-saved\n"

        result = CommandResult(command=command, exit_status=status, stdout=stdout)
        if status != 0 and not allow_failure:
            raise RemoteCommandFailed(f"failed: {command}", command=command, exit_status=status)
        return result

    def sent(self, prefix):
        return [entry for entry in self.commands if entry[0].startswith(prefix)]


@pytest.fixture
def target() -> RemoteTarget:
    return RemoteTarget(
        host="nas.local",
        username="admin",
        password="secret",
        scratch_path="/tmp/plex_restore",
        service_settle_seconds=0,
    )


@pytest.fixture
def remote() -> ScriptedRemote:
    return ScriptedRemote()


@pytest.fixture
def transport(remote, target):
    mock = MagicMock(spec=RemoteTransport)
    mock.connect = AsyncMock(return_value=RemoteSession(target=target))
    mock.execute_command = AsyncMock(side_effect=remote.execute)
    mock.upload_file = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def package(tmp_path) -> Path:
    layout = PackageLayout(tmp_path / "backups", datetime(2024, 1, 1))
    layout.reg_dir.mkdir(parents=True)
    layout.reg_file.write_bytes(b"REGEDIT4\r\n")
    layout.data_dir.mkdir()
    (layout.data_dir / "Preferences.xml").write_bytes(b"P" * 1024)
    return layout.root


@pytest.fixture
def remote_logger():
    events = []
    logger = OperationLogger(OperationKind.REMOTE_RESTORE, "remote", on_progress=events.append)
    logger.events = events
    return logger


@pytest.fixture
def pipeline(transport, tmp_path) -> RemoteRestorePipeline:
    return RemoteRestorePipeline(transport, local_temp_dir=tmp_path / "tmp")


@pytest.fixture(autouse=True)
def local_temp(tmp_path):
    (tmp_path / "tmp").mkdir()


class TestRemoteRestorePipeline:
    """Test cases for RemoteRestorePipeline."""

    @pytest.mark.asyncio
    async def test_full_pipeline(self, pipeline, package, target, remote_logger, transport, remote, tmp_path):
        report = await pipeline.run(package, target, remote_logger)

        assert report.scratch_removed
        assert report.scratch_dir.startswith("/tmp/plex_restore/plex_restore_")
        assert report.service_name == "plexmediaserver"
        assert report.owner == "plex"
        assert remote_logger.log.warning_count == 0

        upload = transport.upload_file.await_args
        assert upload.args[2] == f"{report.scratch_dir}/backup.zip"
        assert list((tmp_path / "tmp").iterdir()) == []
        transport.close.assert_awaited_once()

        fractions = [event.fraction for event in remote_logger.events]
        for expected in (0.15, 0.25, 0.5, 0.65, 0.85, 1.0):
            assert expected in fractions
        assert fractions == sorted(fractions)

    @pytest.mark.asyncio
    async def test_stop_failure_is_a_single_warning(self, pipeline, package, target, remote_logger, remote):
        remote.failures["systemctl stop"] = 5

        report = await pipeline.run(package, target, remote_logger)

        assert report.scratch_removed
        assert remote_logger.log.warning_count == 1
        assert "systemctl stop" in [e for e in remote_logger.log.entries if e.level.value == "warning"][0].message
        assert remote.sent("unzip")
        assert remote.sent("cp -a")
        assert remote.sent("systemctl start")
        assert remote.sent("rm -rf")

    @pytest.mark.asyncio
    async def test_privileged_commands_use_sudo(self, pipeline, package, target, remote_logger, remote):
        await pipeline.run(package, target, remote_logger)

        for prefix in ("systemctl stop", "mkdir -p '/var", "cp -a", "chown -R", "systemctl start"):
            assert all(sudo for _cmd, _allow, sudo in remote.sent(prefix)), prefix
        assert not any(sudo for _cmd, _allow, sudo in remote.sent("systemctl is-active"))

    @pytest.mark.asyncio
    async def test_paths_are_shell_quoted(self, pipeline, package, target, remote_logger, remote):
        await pipeline.run(package, target, remote_logger)

        chown = remote.sent("chown -R")[0][0]
        assert chown.endswith("'/var/lib/plexmediaserver/Library/Application Support/Plex Media Server'")

    @pytest.mark.asyncio
    async def test_service_probe_falls_back_to_configured_name(self, pipeline, package, remote_logger, remote, transport):
        target = RemoteTarget(
            host="nas", username="admin", password="secret",
            service_name="custom-plex", service_settle_seconds=0
        )
        transport.connect.return_value = RemoteSession(target=target)
        remote.failures["systemctl is-active"] = 3

        report = await pipeline.run(package, target, remote_logger)

        assert report.service_name == "custom-plex"
        assert len(remote.sent("systemctl is-active")) == 4
        assert remote_logger.log.warning_count == 0

    @pytest.mark.asyncio
    async def test_no_owner_found_is_a_warning(self, pipeline, package, target, remote_logger, remote):
        remote.missing_users.update({"plex", "plexmediaserver", "pms"})

        report = await pipeline.run(package, target, remote_logger)

        assert report.owner is None
        assert remote.sent("chown") == []
        assert remote_logger.log.warning_count == 1

    @pytest.mark.asyncio
    async def test_second_owner_candidate(self, pipeline, package, target, remote_logger, remote):
        remote.missing_users.add("plex")

        report = await pipeline.run(package, target, remote_logger)

        assert report.owner == "plexmediaserver"
        assert "plexmediaserver:plexmediaserver" in remote.sent("chown -R")[0][0]

    @pytest.mark.asyncio
    async def test_unmanaged_service(self, pipeline, package, remote_logger, remote, transport):
        target = RemoteTarget(host="nas", username="admin", key_filename="id_ed25519", manage_service=False)
        transport.connect.return_value = RemoteSession(target=target)

        report = await pipeline.run(package, target, remote_logger)

        assert report.service_name is None
        assert remote.sent("systemctl") == []

    @pytest.mark.asyncio
    async def test_failure_restarts_service_and_keeps_scratch(
        self, pipeline, package, target, remote_logger, remote, transport, tmp_path
    ):
        remote.failures["unzip"] = 9

        with pytest.raises(OperationFailed) as exc_info:
            await pipeline.run(package, target, remote_logger)

        error = exc_info.value
        assert error.kind == ErrorKind.REMOTE_COMMAND_FAILED
        assert error.details["remote_scratch"].startswith("/tmp/plex_restore/plex_restore_")
        assert "remote_snapshot" not in error.details
        assert len(remote.sent("systemctl start")) == 1
        assert remote.sent("rm -rf") == []
        transport.close.assert_awaited_once()
        assert list((tmp_path / "tmp").iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_copy_reports_saved_remote_data(self, pipeline, package, target, remote_logger, remote):
        remote.failures["cp -a"] = 1

        with pytest.raises(OperationFailed) as exc_info:
            await pipeline.run(package, target, remote_logger)

        details = exc_info.value.details
        assert details["remote_snapshot"].startswith(details["remote_scratch"] + "/current_backup_")
        assert any(details["remote_snapshot"] in e.message for e in remote_logger.log.entries)
        assert len(remote.sent("systemctl start")) == 1

    @pytest.mark.asyncio
    async def test_missing_remote_data_is_not_reported(self, pipeline, package, target, remote_logger, remote):
        remote.existing_data = False
        remote.failures["cp -a"] = 1

        with pytest.raises(OperationFailed) as exc_info:
            await pipeline.run(package, target, remote_logger)

        assert "remote_snapshot" not in exc_info.value.details

    @pytest.mark.asyncio
    async def test_archive_is_uploaded_as_is(self, pipeline, package, target, remote_logger, transport, tmp_path):
        archive = tmp_path / "ready.zip"
        create_archive(package, archive)

        await pipeline.run(archive, target, remote_logger)

        assert transport.upload_file.await_args.args[1] == archive
        assert archive.exists()

    @pytest.mark.asyncio
    async def test_upload_progress_is_interpolated(self, pipeline, package, target, remote_logger, transport):
        async def upload(session, local, remote_path, on_progress):
            on_progress(50, 100)
            on_progress(100, 100)

        transport.upload_file.side_effect = upload

        await pipeline.run(package, target, remote_logger)

        upload_events = [e.fraction for e in remote_logger.events if e.stage == "upload"]
        assert upload_events[:2] == [pytest.approx(0.375), pytest.approx(0.5)]


class TestParamikoTransport:
    """Test cases for ParamikoTransport command execution."""

    def _client(self, status=0, out=b"", err=b""):
        stdin, stdout, stderr = MagicMock(), MagicMock(), MagicMock()
        stdout.read.return_value = out
        stderr.read.return_value = err
        stdout.channel.recv_exit_status.return_value = status
        client = MagicMock()
        client.exec_command.return_value = (stdin, stdout, stderr)
        return client, stdin

    def test_sudo_with_password(self, target):
        session = RemoteSession(target=target)
        line = ParamikoTransport().wrap_sudo(session, "rm -rf '/tmp/x y'")
        assert line.startswith("sudo -S -p '' sh -c ")

    def test_sudo_with_key(self):
        target = RemoteTarget(host="nas", username="admin", key_filename="id_rsa")
        line = ParamikoTransport().wrap_sudo(RemoteSession(target=target), "true")
        assert line == "sudo -n sh -c true"

    @pytest.mark.asyncio
    async def test_password_written_to_sudo(self, target):
        client, stdin = self._client()
        session = RemoteSession(target=target, client=client)

        result = await ParamikoTransport().execute_command(session, "systemctl stop plex", sudo=True)

        assert result.ok
        stdin.write.assert_called_once_with("secret\n")
        sent = client.exec_command.call_args.args[0]
        assert sent.startswith("sudo -S")

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self, target):
        client, _stdin = self._client(status=2, err=b"boom")
        session = RemoteSession(target=target, client=client)

        with pytest.raises(RemoteCommandFailed) as exc_info:
            await ParamikoTransport().execute_command(session, "false")

        assert exc_info.value.exit_status == 2
        assert exc_info.value.stderr == "boom"

    @pytest.mark.asyncio
    async def test_allowed_failure_returns_result(self, target):
        client, stdin = self._client(status=1, out=b"inactive\n")
        session = RemoteSession(target=target, client=client)

        result = await ParamikoTransport().execute_command(session, "systemctl is-active x", allow_failure=True)

        assert not result.ok
        assert result.stdout == "inactive\n"
        stdin.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_connection_test_reports_failure(self, target, monkeypatch):
        transport = ParamikoTransport()
        monkeypatch.setattr(transport, "connect", AsyncMock(side_effect=RemoteCommandFailed("refused")))

        assert await transport.test_connection(target) is False
