"""
Base classes for remote transport.

This module defines the interface the remote restore pipeline drives: open a
session to a RemoteTarget, run commands with an explicit success contract,
upload a file with byte-level progress, close the session.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from plex_backup.models.config import RemoteTarget

logger = logging.getLogger(__name__)

UploadProgress = Callable[[int, int], None]


@dataclass
class CommandResult:
    """Result of one remote command."""
    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class RemoteSession:
    """An open connection to a remote host."""
    target: RemoteTarget
    client: Any = None

    @property
    def description(self) -> str:
        return f"{self.target.username}@{self.target.host}:{self.target.port}"


class RemoteTransport(ABC):
    """
    Abstract secure transport.

    Implementations own connection setup and privilege escalation; callers
    only see commands, their exit status and uploads.
    """

    @abstractmethod
    async def connect(self, target: RemoteTarget) -> RemoteSession:
        pass

    @abstractmethod
    async def execute_command(
        self,
        session: RemoteSession,
        command: str,
        timeout: Optional[float] = None,
        allow_failure: bool = False,
        sudo: bool = False
    ) -> CommandResult:
        """
        Run a shell command on the remote host.

        Args:
            session: Open session
            command: Shell command line, already quoted
            timeout: Seconds before the command is abandoned
            allow_failure: Return a non-zero result instead of raising
            sudo: Run with elevated privileges using the session's credential

        Returns:
            CommandResult

        Raises:
            RemoteCommandFailed: Non-zero exit status when failure is not allowed
        """
        pass

    @abstractmethod
    async def upload_file(
        self,
        session: RemoteSession,
        local_path: Path,
        remote_path: str,
        on_progress: Optional[UploadProgress] = None
    ) -> None:
        pass

    @abstractmethod
    async def close(self, session: RemoteSession) -> None:
        pass

    async def test_connection(self, target: RemoteTarget) -> bool:
        """
        Test connectivity by connecting and running a trivial command.

        Returns:
            True if the connection works, False otherwise
        """
        try:
            session = await self.connect(target)
        except Exception as e:
            logger.error(f"Connection test to {target.host}:{target.port} failed: {e}")
            return False

        try:
            result = await self.execute_command(
                session, "echo ok", timeout=target.command_timeout, allow_failure=True
            )
            return result.ok and result.stdout.strip() == "ok"
        except Exception as e:
            logger.error(f"Connection test command failed: {e}")
            return False
        finally:
            await self.close(session)
