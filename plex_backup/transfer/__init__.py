"""
Remote transport and the remote restore pipeline.
"""

from plex_backup.transfer.base import CommandResult, RemoteSession, RemoteTransport
from plex_backup.transfer.remote_restore import RemoteRestorePipeline, RemoteRestoreReport
from plex_backup.transfer.ssh import ParamikoTransport

__all__ = [
    "CommandResult",
    "ParamikoTransport",
    "RemoteRestorePipeline",
    "RemoteRestoreReport",
    "RemoteSession",
    "RemoteTransport",
]
