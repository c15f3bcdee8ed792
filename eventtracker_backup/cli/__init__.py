"""CLI package for eventtracker_backup."""

from eventtracker_backup.cli.main import (
    BackupServices,
    build_services,
    cli,
    get_config_file,
)
from eventtracker_backup.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "BackupServices",
    "build_services",
    "cli",
    "get_config_file",
]
