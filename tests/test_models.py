"""
Unit tests for the configuration and session models.
"""

from datetime import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from plex_backup.core.exceptions import (
    CopyFailed,
    ErrorKind,
    OperationFailed,
    OperationTimedOut,
    TargetLocked,
    classify_error,
)
from plex_backup.models.config import (
    LINUX_DATA_DIR,
    ApplicationProfile,
    BackupOptions,
    PlatformKind,
    RemoteTarget,
    RestoreOptions,
    RetryPolicy,
)
from plex_backup.models.session import BackupPackage, RollbackReport, RollbackStatus, SafetySnapshot


class TestConfigModels:
    """Test cases for the option models."""

    def test_retry_policy_is_linear(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 5
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_backup_needs_a_component(self, tmp_path):
        with pytest.raises(ValidationError):
            BackupOptions(destination_root=tmp_path, include_config=False, include_data=False)

    def test_restore_needs_a_component(self, tmp_path):
        with pytest.raises(ValidationError):
            RestoreOptions(package_path=tmp_path, restore_config=False, restore_data=False)

    def test_options_are_frozen(self, tmp_path):
        options = BackupOptions(destination_root=tmp_path)
        with pytest.raises(ValidationError):
            options.include_logs = True

    def test_windows_profile(self):
        profile = ApplicationProfile.windows(local_app_data=r"C:\Users\me\AppData\Local")
        assert profile.platform == PlatformKind.WINDOWS
        assert profile.data_dir.name == "Plex Media Server"
        assert profile.registry_key.endswith("Plex, Inc.")
        assert profile.has_config_store

    def test_linux_profile(self):
        profile = ApplicationProfile.linux()
        assert profile.data_dir == Path(LINUX_DATA_DIR)
        assert profile.registry_key is None
        assert not profile.has_config_store


class TestRemoteTarget:
    """Test cases for RemoteTarget."""

    def test_defaults(self):
        target = RemoteTarget(host=" nas.local ", username="admin", password="secret")
        assert target.host == "nas.local"
        assert target.port == 22
        assert target.scratch_path == "/tmp/plex_restore"
        assert target.service_name == "plexmediaserver"
        assert target.manage_service is True

    def test_password_hidden_from_repr(self):
        target = RemoteTarget(host="nas", username="admin", password="secret")
        assert "secret" not in repr(target)

    def test_credential_required(self):
        with pytest.raises(ValidationError):
            RemoteTarget(host="nas", username="admin")

    def test_blank_host_rejected(self):
        with pytest.raises(ValidationError):
            RemoteTarget(host="  ", username="admin", key_filename="id_rsa")


class TestSessionModels:
    """Test cases for session models."""

    def test_rollback_report_status(self):
        report = RollbackReport()
        report.add_action("Deleted x")
        assert report.status == RollbackStatus.COMPLETED
        assert not report.requires_manual_review

        report.add_warning("Left y in place")
        assert report.requires_manual_review
        assert "manual review" in report.summary

    def test_package_timestamp_is_immutable(self, tmp_path):
        package = BackupPackage(name="Monday", created_at=datetime(2024, 1, 1), path=tmp_path)
        package.name = "Renamed"
        assert package.name == "Renamed"
        with pytest.raises(ValidationError):
            package.created_at = datetime(2025, 1, 1)

    def test_snapshot_manifest_round_trip(self, tmp_path):
        snapshot = SafetySnapshot(root=tmp_path / "snap", source=tmp_path / "data", captured=["Preferences.xml"])
        snapshot.root.mkdir()
        snapshot.write_manifest()

        loaded = SafetySnapshot.load(snapshot.root)
        assert loaded.source == snapshot.source
        assert loaded.captured == ["Preferences.xml"]


class TestErrorKinds:
    """Test cases for classify_error."""

    def test_known_errors(self):
        assert classify_error(TargetLocked("/data", 5)) == ErrorKind.TARGET_LOCKED
        assert classify_error(CopyFailed("nothing copied")) == ErrorKind.COPY_FAILED
        assert classify_error(OperationTimedOut(10)) == ErrorKind.OPERATION_TIMED_OUT

    def test_wrapped_error_keeps_cause_kind(self):
        error = OperationFailed("Restore failed", cause=CopyFailed("nothing copied"))
        assert classify_error(error) == ErrorKind.COPY_FAILED

    def test_unknown_error(self):
        assert classify_error(KeyError("x")) == ErrorKind.UNEXPECTED
