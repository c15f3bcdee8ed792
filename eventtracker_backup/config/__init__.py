"""
eventtracker_backup.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from eventtracker_backup.config.loader import ConfigError, ConfigLoader
from eventtracker_backup.config.settings import (
    APP_KEY_PLACEHOLDER,
    BackupSettings,
)

__all__ = [
    "APP_KEY_PLACEHOLDER",
    "BackupSettings",
    "ConfigError",
    "ConfigLoader",
]
