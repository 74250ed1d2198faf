"""
Registry-backed configuration store.

The application's settings live under a single registry key. Export and import
go through the ``reg`` command line tool via the ExternalProcess capability.
"""

import logging
from pathlib import Path

from plex_backup.core.exceptions import ConfigStoreError
from plex_backup.platform.process import ExternalProcess

logger = logging.getLogger(__name__)


class RegistryConfigStore:
    """Exports and imports one registry key as a ``.reg`` file."""

    def __init__(self, runner: ExternalProcess, key: str, timeout: float = 120.0):
        self.runner = runner
        self.key = key
        self.timeout = timeout

    async def export_to(self, destination: Path) -> Path:
        """
        Export the key to a file, replacing any existing file.

        Args:
            destination: Target ``.reg`` path

        Returns:
            The written path

        Raises:
            ConfigStoreError: If ``reg`` fails or writes nothing
        """
        result = await self.runner.run(
            "reg", ["export", self.key, str(destination), "/y"], timeout=self.timeout
        )
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            raise ConfigStoreError(
                f"Registry export of {self.key} failed ({reason})",
                details={"stderr": result.stderr.strip()}
            )
        if not destination.is_file():
            raise ConfigStoreError(f"Registry export reported success but {destination} was not written")

        logger.debug(f"Exported {self.key} to {destination}")
        return destination

    async def import_from(self, source: Path) -> None:
        """Import a previously exported ``.reg`` file."""
        if not source.is_file():
            raise ConfigStoreError(f"Registry file not found: {source}")

        result = await self.runner.run("reg", ["import", str(source)], timeout=self.timeout)
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            raise ConfigStoreError(
                f"Registry import of {source.name} failed ({reason})",
                details={"stderr": result.stderr.strip()}
            )
        logger.debug(f"Imported {source}")
