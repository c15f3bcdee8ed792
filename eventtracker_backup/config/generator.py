"""
Configuration file generator for the event tracker backup tool.

Provides functionality to generate a default configuration file with
documentation for all available options.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# Event Tracker Backup Configuration
# ==================================
#
# CLI arguments always override these values.
# Save as ~/.eventtracker-backup/config.yaml (or a custom location).

# Dropbox App
# -----------

# App key of your Dropbox app (App Console -> Settings -> App key).
# Backups are disabled until this is set.
app_key: PUT_YOUR_DROPBOX_APP_KEY_HERE

# Redirect URI registered for the app. After approving access in the
# browser, paste the full URL you were redirected to into `link`.
# Default: http://localhost:53682/dropbox-auth
# redirect_uri: http://localhost:53682/dropbox-auth

# Dropbox folder holding the encrypted archives
# Default: /backups
# remote_dir: /backups


# Backup Behavior
# ---------------

# Number of backups kept in Dropbox; older ones are pruned after each upload.
# 0 keeps every backup.
# Default: 30
# retention_count: 30

# Let `daemon start` schedule periodic backups
# Default: false
# daily_backup_enabled: true

# Interval between scheduled backups (30m, 6h, 1d, or seconds)
# Default: 1d
# backup_interval: 1d


# Network
# -------

# Timeout in seconds for every Dropbox HTTP call
# Default: 30
# http_timeout: 30

# Attempts for rate-limited (429) or server error (5xx) file API calls
# Default: 3
# api_max_retries: 3


# Paths
# -----

# Local event store (SQLite)
# Default: ~/.eventtracker-backup/eventtracker.db
# db_path: /path/to/eventtracker.db

# Scratch directory for archives in transit
# Default: ~/.eventtracker-backup/cache
# cache_dir: /path/to/cache


# Logging
# -------

# Default: false
# verbose: true

# Default: ~/.eventtracker-backup/logs
# log_dir: /path/to/logs

# Number of daily log files to keep (0 disables cleanup)
# Default: 10
# log_retention_count: 10
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves
    the configuration with secure permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success, error_message). (True, None) on success.
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
