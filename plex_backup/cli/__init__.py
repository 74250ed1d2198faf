"""
CLI module for the Plex Backup Manager.

This module provides the command-line interface using Click and Rich.
"""

from plex_backup.cli.main import main

__all__ = ["main"]
