"""
Backup settings resolved from the YAML configuration.

Turns the raw configuration dictionary into a typed settings object with
defaults for every option, so the rest of the package never has to look
up keys or guess defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from eventtracker_backup.daemon import parse_interval
from eventtracker_backup.utils.paths import resolve_config_dir

# Placeholder shipped in the generated config; treated as "not configured"
APP_KEY_PLACEHOLDER = "PUT_YOUR_DROPBOX_APP_KEY_HERE"

DEFAULT_REDIRECT_URI = "http://localhost:53682/dropbox-auth"
DEFAULT_REMOTE_DIR = "/backups"
DEFAULT_RETENTION_COUNT = 30
DEFAULT_BACKUP_INTERVAL = "1d"
DEFAULT_HTTP_TIMEOUT = 30.0  # seconds
DEFAULT_API_MAX_RETRIES = 3
DEFAULT_LOG_RETENTION_COUNT = 10

# Local store file name
DATABASE_NAME = "eventtracker.db"


@dataclass
class BackupSettings:
    """
    Effective settings for the backup subsystem.

    Attributes:
        config_dir: Configuration directory (credentials, cache, logs)
        app_key: Dropbox app key used as the OAuth client id
        redirect_uri: Redirect URI registered for the Dropbox app
        remote_dir: Dropbox folder that holds the archives
        retention_count: Number of remote backups to keep (0 = keep all)
        backup_interval: Seconds between scheduled backups
        daily_backup_enabled: Whether the daemon schedules periodic backups
        http_timeout: Timeout in seconds for every provider HTTP call
        api_max_retries: Attempts for rate-limited or 5xx file API calls
        db_path: Path of the SQLite event store
        cache_dir: Scratch directory for archives in transit
        log_dir: Optional log directory override
        log_retention_count: Number of log files to keep
        verbose: Verbose logging by default
        daemon_pid_file: PID file of the daemon (<config_dir>/daemon.pid)
    """

    config_dir: Path
    app_key: str = APP_KEY_PLACEHOLDER
    redirect_uri: str = DEFAULT_REDIRECT_URI
    remote_dir: str = DEFAULT_REMOTE_DIR
    retention_count: int = DEFAULT_RETENTION_COUNT
    backup_interval: int = 86400
    daily_backup_enabled: bool = False
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    api_max_retries: int = DEFAULT_API_MAX_RETRIES
    db_path: Path | None = None
    cache_dir: Path | None = None
    log_dir: Path | None = None
    log_retention_count: int = DEFAULT_LOG_RETENTION_COUNT
    verbose: bool = False
    daemon_pid_file: Path | None = None

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = self.config_dir / DATABASE_NAME
        if self.cache_dir is None:
            self.cache_dir = self.config_dir / "cache"
        if self.daemon_pid_file is None:
            self.daemon_pid_file = self.config_dir / "daemon.pid"

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, config_dir: Path | str | None = None
    ) -> BackupSettings:
        """
        Create BackupSettings from a (validated) configuration dictionary.

        Args:
            data: Configuration dictionary, typically from ConfigLoader
            config_dir: Configuration directory; resolved the usual way if None

        Returns:
            BackupSettings with defaults for every missing key
        """
        data = data or {}
        resolved_dir = resolve_config_dir(config_dir)

        def optional_path(key: str) -> Path | None:
            value = data.get(key)
            return Path(value).expanduser() if value else None

        return cls(
            config_dir=resolved_dir,
            app_key=str(data.get("app_key", APP_KEY_PLACEHOLDER)).strip(),
            redirect_uri=str(data.get("redirect_uri", DEFAULT_REDIRECT_URI)).strip(),
            remote_dir=str(data.get("remote_dir", DEFAULT_REMOTE_DIR)).rstrip("/")
            or DEFAULT_REMOTE_DIR,
            retention_count=int(data.get("retention_count", DEFAULT_RETENTION_COUNT)),
            backup_interval=parse_interval(
                data.get("backup_interval", DEFAULT_BACKUP_INTERVAL)
            ),
            daily_backup_enabled=bool(data.get("daily_backup_enabled", False)),
            http_timeout=float(data.get("http_timeout", DEFAULT_HTTP_TIMEOUT)),
            api_max_retries=int(data.get("api_max_retries", DEFAULT_API_MAX_RETRIES)),
            db_path=optional_path("db_path"),
            cache_dir=optional_path("cache_dir"),
            log_dir=optional_path("log_dir"),
            log_retention_count=int(
                data.get("log_retention_count", DEFAULT_LOG_RETENTION_COUNT)
            ),
            verbose=bool(data.get("verbose", False)),
            daemon_pid_file=optional_path("daemon_pid_file"),
        )
