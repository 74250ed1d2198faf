"""
SSH transport implementation using paramiko.

Commands run over an SSH exec channel and uploads go through SFTP. Blocking
paramiko calls are pushed to the default executor so the pipeline's event
loop stays responsive.
"""

import asyncio
import logging
import shlex
import socket
from pathlib import Path
from typing import Optional

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from plex_backup.core.exceptions import RemoteCommandFailed
from plex_backup.models.config import RemoteTarget
from plex_backup.transfer.base import CommandResult, RemoteSession, RemoteTransport, UploadProgress

logger = logging.getLogger(__name__)


class ParamikoTransport(RemoteTransport):
    """
    RemoteTransport over SSH.

    Privileged commands are wrapped in ``sudo``: with a password the same
    credential is written to sudo's stdin (``sudo -S -p ''``), with key-only
    authentication ``sudo -n`` is used and needs passwordless sudo on the host.
    """

    def __init__(self, host_key_policy: Optional[paramiko.MissingHostKeyPolicy] = None):
        self.host_key_policy = host_key_policy or AutoAddPolicy()

    async def connect(self, target: RemoteTarget) -> RemoteSession:
        loop = asyncio.get_running_loop()
        client = SSHClient()
        client.set_missing_host_key_policy(self.host_key_policy)

        connect_params = {
            'hostname': target.host,
            'port': target.port,
            'username': target.username,
            'timeout': target.connect_timeout,
            'look_for_keys': target.key_filename is None and target.password is None,
            'allow_agent': True
        }
        if target.password:
            connect_params['password'] = target.password
        if target.key_filename:
            connect_params['key_filename'] = target.key_filename

        try:
            await loop.run_in_executor(None, lambda: client.connect(**connect_params))
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            raise RemoteCommandFailed(
                f"Could not connect to {target.host}:{target.port}: {e}", command="connect"
            ) from e

        logger.info(f"SSH connection established to {target.host}:{target.port}")
        return RemoteSession(target=target, client=client)

    def wrap_sudo(self, session: RemoteSession, command: str) -> str:
        if session.target.password:
            return f"sudo -S -p '' sh -c {shlex.quote(command)}"
        return f"sudo -n sh -c {shlex.quote(command)}"

    def _exec(self, client: SSHClient, command: str, timeout: Optional[float], stdin_data: Optional[str]):
        stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
        if stdin_data is not None:
            stdin.write(stdin_data)
            stdin.flush()
        stdin.channel.shutdown_write()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        return status, out, err

    async def execute_command(
        self,
        session: RemoteSession,
        command: str,
        timeout: Optional[float] = None,
        allow_failure: bool = False,
        sudo: bool = False
    ) -> CommandResult:
        timeout = timeout or session.target.command_timeout
        line = self.wrap_sudo(session, command) if sudo else command
        stdin_data = f"{session.target.password}\n" if sudo and session.target.password else None

        logger.debug(f"[{session.description}] $ {'sudo ' if sudo else ''}{command}")
        loop = asyncio.get_running_loop()
        try:
            status, out, err = await loop.run_in_executor(
                None, self._exec, session.client, line, timeout, stdin_data
            )
        except (socket.timeout, TimeoutError):
            status, out, err = -1, "", f"Command timed out after {timeout}s"
        except paramiko.SSHException as e:
            status, out, err = -1, "", str(e)

        result = CommandResult(command=command, exit_status=status, stdout=out, stderr=err)
        if not result.ok and not allow_failure:
            raise RemoteCommandFailed(
                f"Remote command failed with exit status {status}: {command}",
                command=command,
                exit_status=status,
                stderr=err.strip()
            )
        return result

    async def upload_file(
        self,
        session: RemoteSession,
        local_path: Path,
        remote_path: str,
        on_progress: Optional[UploadProgress] = None
    ) -> None:
        def _put():
            sftp = session.client.open_sftp()
            try:
                sftp.put(str(local_path), remote_path, callback=on_progress)
            finally:
                sftp.close()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _put)
        except (IOError, paramiko.SSHException) as e:
            raise RemoteCommandFailed(
                f"Upload of {Path(local_path).name} to {remote_path} failed: {e}",
                command="sftp put"
            ) from e
        logger.debug(f"Uploaded {local_path} to {session.description}:{remote_path}")

    async def close(self, session: RemoteSession) -> None:
        if session.client is not None:
            session.client.close()
            session.client = None
        logger.debug(f"SSH connection to {session.target.host} closed")
