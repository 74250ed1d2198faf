"""
Unit tests for the operation log and the operation logger.
"""

import logging
from unittest.mock import MagicMock

import pytest

from plex_backup.models.session import LogLevel, OperationKind, OperationLog
from plex_backup.utils.logging import OperationLogger, get_logger, setup_logging


class TestOperationLog:
    """Test cases for OperationLog."""

    def test_append_and_counts(self):
        log = OperationLog(OperationKind.BACKUP)
        log.append(LogLevel.INFO, "first")
        log.append(LogLevel.WARNING, "careful")
        log.append(LogLevel.ERROR, "broken")
        log.append(LogLevel.INFO, "second")

        assert len(log) == 4
        assert log.warning_count == 1
        assert log.error_count == 1

        summary = log.summary()
        assert summary.steps_completed == 2
        assert summary.warning_count == 1
        assert summary.error_count == 1

    def test_full_text_renders_in_order(self):
        log = OperationLog(OperationKind.RESTORE)
        log.append(LogLevel.INFO, "one")
        log.append(LogLevel.WARNING, "two")

        lines = log.full_text().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("INFO: one")
        assert lines[1].endswith("WARNING: two")
        assert lines[0].startswith("[")

    def test_sealed_log_rejects_entries(self):
        log = OperationLog(OperationKind.BACKUP)
        log.append(LogLevel.INFO, "done")
        log.seal()
        finished = log.finished_at
        log.seal()

        assert log.sealed
        assert log.finished_at == finished
        with pytest.raises(RuntimeError):
            log.append(LogLevel.INFO, "too late")

    def test_summary_text(self):
        log = OperationLog(OperationKind.BACKUP)
        log.append(LogLevel.INFO, "step")
        log.append(LogLevel.ERROR, "bad")

        text = log.summary().to_text()
        assert "Operation Duration: 00:00" in text
        assert "Steps Completed: 1" in text
        assert "Errors Encountered: 1" in text
        assert "Warnings" not in text


class TestOperationLogger:
    """Test cases for OperationLogger."""

    def test_entries_reach_log_and_callback(self):
        on_log = MagicMock()
        op_logger = OperationLogger(OperationKind.BACKUP, "tests", on_log=on_log)

        op_logger.info("hello", stage="init")
        op_logger.warning("watch out")

        assert [entry.message for entry in op_logger.log.entries] == ["hello", "watch out"]
        assert op_logger.log.entries[0].stage == "init"
        assert on_log.call_count == 2

    def test_debug_is_not_recorded(self):
        op_logger = OperationLogger(OperationKind.BACKUP, "tests")
        op_logger.debug("noise")
        assert len(op_logger.log) == 0

    def test_child_shares_log(self):
        op_logger = OperationLogger(OperationKind.RESTORE, "restore")
        child = op_logger.child("copy")

        child.info("from child")

        assert child.log is op_logger.log
        assert child.logger.name == "plex_backup.copy"
        assert op_logger.log.entries[0].message == "from child"

    def test_step_complete_reports_duration(self):
        op_logger = OperationLogger(OperationKind.BACKUP, "tests")
        op_logger.step_start("config", "Exporting")
        op_logger.step_complete("config", "Exported")

        assert op_logger.log.entries[-1].message.startswith("Exported (took ")

    def test_step_failed_is_an_error(self):
        op_logger = OperationLogger(OperationKind.BACKUP, "tests")
        op_logger.step_failed("data", "disk full")

        assert op_logger.log.error_count == 1
        assert "data" in op_logger.log.entries[0].message

    def test_callback_errors_are_swallowed(self):
        op_logger = OperationLogger(
            OperationKind.BACKUP,
            "tests",
            on_log=MagicMock(side_effect=ValueError("ui gone")),
            on_progress=MagicMock(side_effect=ValueError("ui gone")),
        )

        op_logger.info("still fine")
        op_logger.progress("data", 0.5)

        assert len(op_logger.log) == 1

    def test_progress_fraction_is_clamped(self):
        events = []
        op_logger = OperationLogger(OperationKind.BACKUP, "tests", on_progress=events.append)

        op_logger.progress("data", 1.7, "over")
        op_logger.progress("data", -1, "under")

        assert [event.fraction for event in events] == [1.0, 0.0]
        assert events[0].operation == OperationKind.BACKUP


class TestSetupLogging:
    """Test cases for setup_logging."""

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "plex_backup.log"
        logger = setup_logging(level="DEBUG", log_file=str(log_file), rich_console=False)

        try:
            assert logger.level == logging.DEBUG
            get_logger("tests").info("written to file")
            for handler in logger.handlers:
                handler.flush()
            assert "written to file" in log_file.read_text()
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
