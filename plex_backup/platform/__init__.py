"""
Platform capabilities: external processes, service control, configuration
store and mirroring tools.
"""

from plex_backup.platform.config_store import RegistryConfigStore
from plex_backup.platform.mirror_tools import MirrorTool, RobocopyTool, RsyncTool, default_mirror_tool
from plex_backup.platform.process import ExternalProcess, ProcessResult, SubprocessRunner
from plex_backup.platform.service import ManagedService, ProcessServiceController, ServiceController

__all__ = [
    "ExternalProcess",
    "ManagedService",
    "MirrorTool",
    "ProcessResult",
    "ProcessServiceController",
    "RegistryConfigStore",
    "RobocopyTool",
    "RsyncTool",
    "ServiceController",
    "SubprocessRunner",
    "default_mirror_tool",
]
