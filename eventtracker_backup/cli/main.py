"""
Command-line interface for eventtracker_backup.

Provides CLI commands for linking a Dropbox account, running backups and
restores, checking status, and managing the backup daemon.

Usage:
    # Show help
    eventtracker-backup --help

    # Create a config file, then set app_key in it
    eventtracker-backup init-config

    # Link Dropbox
    eventtracker-backup link

    # Back up now / restore the newest backup
    eventtracker-backup backup
    eventtracker-backup restore

    # Run scheduled backups in the foreground
    eventtracker-backup daemon start --interval 1d
"""

import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import click

from eventtracker_backup import __version__
from eventtracker_backup.auth.dropbox_auth import AuthenticationError, DropboxAuth
from eventtracker_backup.backup.archive import BackupArchiveCodec
from eventtracker_backup.backup.orchestrator import BackupOrchestrator
from eventtracker_backup.backup.remote import NO_BACKUPS_MESSAGE, RemoteBackupStore
from eventtracker_backup.backup.result import (
    BackupError,
    BackupOutcome,
    BackupSuccess,
    ErrorKind,
)
from eventtracker_backup.config.generator import save_config_file
from eventtracker_backup.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
)
from eventtracker_backup.config.settings import DATABASE_NAME, BackupSettings
from eventtracker_backup.storage.db import EventStore
from eventtracker_backup.storage.secure_store import (
    SecureCredentialStore,
    SecureStoreError,
)
from eventtracker_backup.utils import resolve_config_dir
from eventtracker_backup.utils.logging import (
    cleanup_old_logs,
    get_logger,
    setup_logging,
)


@dataclass
class BackupServices:
    """The wired-up backup components for one CLI invocation."""

    store: EventStore
    secure_store: SecureCredentialStore
    auth: DropboxAuth
    codec: BackupArchiveCodec
    remote: RemoteBackupStore
    orchestrator: BackupOrchestrator

    def close(self) -> None:
        self.store.close()


def build_services(settings: BackupSettings) -> BackupServices:
    """
    Build the backup components from settings.

    Opens the event store (creating it if needed); call ``close()`` when done.
    """
    db_path = settings.db_path or settings.config_dir / DATABASE_NAME
    cache_dir = settings.cache_dir or settings.config_dir / "cache"
    store = EventStore(db_path)
    store.open()

    secure_store = SecureCredentialStore(settings.config_dir)
    auth = DropboxAuth(settings, secure_store)
    codec = BackupArchiveCodec(store, secure_store, cache_dir)
    remote = RemoteBackupStore(
        auth,
        settings.remote_dir,
        cache_dir,
        timeout=settings.http_timeout,
        max_retries=settings.api_max_retries,
    )
    orchestrator = BackupOrchestrator(auth, codec, remote, settings.retention_count)
    return BackupServices(store, secure_store, auth, codec, remote, orchestrator)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


def _fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _services(ctx: click.Context) -> BackupServices:
    """Build services for a command and close them when the command ends."""
    settings: BackupSettings = ctx.obj["settings"]
    services = build_services(settings)
    ctx.call_on_close(services.close)
    return services


def _report_outcome(outcome: BackupOutcome, action: str) -> bool:
    """Print an outcome; returns True on success."""
    if isinstance(outcome, BackupSuccess):
        message = f"{action} completed"
        if outcome.file is not None:
            message += f": {outcome.file.name}"
        click.echo(click.style(message, fg="green"))
        return True

    message = f"{action} failed ({outcome.kind.value}): {outcome.message}"
    click.echo(click.style(message, fg="red"), err=True)
    if outcome.kind is ErrorKind.AUTH:
        click.echo("Run 'eventtracker-backup link' to (re)link your Dropbox account.")
    elif outcome.kind is ErrorKind.NETWORK:
        click.echo("Check your internet connection and try again.")
    return False


@click.group()
@click.version_option(version=__version__, prog_name="eventtracker-backup")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="EVENTTRACKER_BACKUP_CONFIG_DIR",
    help="Configuration directory path (default: ~/.eventtracker-backup).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="EVENTTRACKER_BACKUP_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Encrypted Dropbox backups for the event tracker.

    Backs up the local event database as an encrypted archive to your
    Dropbox, keeps a bounded number of backups, and restores the newest one.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = resolve_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Show error but don't fail - defaults still allow status and init-config
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    settings = BackupSettings.from_dict(config, resolved_config_dir)
    ctx.obj["settings"] = settings

    # CLI flag takes precedence over config file
    effective_verbose = verbose or settings.verbose
    ctx.obj["verbose"] = effective_verbose

    log_dir = settings.log_dir or resolved_config_dir / "logs"
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Examples:

        # Create config file (fails if already exists)
        eventtracker-backup init-config

        # Overwrite existing config file
        eventtracker-backup init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Set app_key to the key of your Dropbox app")
        click.echo("2. Run 'eventtracker-backup link' to connect your account")
        logger.info(f"Created configuration file: {config_file}")
    else:
        logger.error(f"Failed to create configuration file: {error}")
        _fail(str(error))


# =============================================================================
# Link / Unlink Commands
# =============================================================================


@cli.command("link")
@click.option(
    "--no-browser",
    is_flag=True,
    help="Print the authorization URL instead of opening a browser.",
)
@click.option(
    "--redirect-uri",
    "redirected_url",
    default=None,
    help="URL the browser was redirected to (prompted for if omitted).",
)
@click.pass_context
def link_command(
    ctx: click.Context, no_browser: bool, redirected_url: str | None
) -> None:
    """
    Link a Dropbox account.

    Opens the Dropbox authorization page. After you approve access, the
    browser is sent to the configured redirect URI; paste that full URL
    back here to finish linking.

    Examples:

        eventtracker-backup link
        eventtracker-backup link --no-browser
    """
    logger = get_logger(__name__)

    try:
        services = _services(ctx)
        auth = services.auth

        if not auth.is_configured():
            _fail(
                "Dropbox app key is not configured. "
                f"Set app_key in {ctx.obj['config_file']}"
            )

        url = auth.start_link(open_browser=not no_browser)
        click.echo("Open this URL to authorize access to your Dropbox:\n")
        click.echo(f"  {url}\n")

        if redirected_url is None:
            redirected_url = click.prompt("Paste the URL you were redirected to")

        provider_error = auth.redirect_error(redirected_url)
        if provider_error:
            _fail(provider_error)

        if auth.handle_redirect(redirected_url):
            click.echo(click.style("Dropbox account linked!", fg="green"))
            logger.info("Dropbox account linked")
        else:
            _fail("Linking failed. Run 'eventtracker-backup link' to try again.")

    except (AuthenticationError, SecureStoreError) as e:
        logger.error(f"Linking failed: {e}")
        _fail(str(e))


@cli.command("unlink")
@click.pass_context
def unlink_command(ctx: click.Context) -> None:
    """Forget the linked Dropbox account."""
    try:
        services = _services(ctx)
        if services.auth.unlink():
            click.echo(click.style("Dropbox account unlinked.", fg="green"))
        else:
            click.echo("No Dropbox account was linked.")
    except SecureStoreError as e:
        _fail(str(e))


# =============================================================================
# Status Command
# =============================================================================


def _format_expiry(expires_at_ms: object) -> str:
    if not isinstance(expires_at_ms, int) or expires_at_ms <= 0:
        return "unknown"
    return datetime.fromtimestamp(expires_at_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show link, database and backup status.

    Example:

        eventtracker-backup status
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]

    from eventtracker_backup.daemon import BackupScheduler

    try:
        services = _services(ctx)
        token_status = services.auth.token_status()
    except SecureStoreError as e:
        _fail(str(e))

    click.echo("=== Event Tracker Backup Status ===\n")
    click.echo(f"Configuration directory: {settings.config_dir}")
    click.echo(f"Database: {settings.db_path}")

    counts = services.store.counts()
    click.echo(
        f"  {counts['event_types']} event types, {counts['day_events']} day events, "
        f"{counts['custom_events']} custom events"
    )
    click.echo()

    if not token_status["configured"]:
        click.echo(f"Dropbox: {click.style('App key not configured', fg='red')}")
    elif token_status["linked"]:
        click.echo(f"Dropbox: {click.style('Linked', fg='green')}")
        if ctx.obj["verbose"]:
            expires = _format_expiry(token_status["expires_at_ms"])
            click.echo(f"  Access token expires: {expires}")
    else:
        click.echo(f"Dropbox: {click.style('Not linked', fg='yellow')}")
        if token_status["pending_authorization"]:
            click.echo("  Authorization pending; run 'eventtracker-backup link' again")

    click.echo(f"Remote folder: {settings.remote_dir}")
    retention = settings.retention_count if settings.retention_count > 0 else "all"
    click.echo(f"Retention: {retention}")

    if token_status["configured"] and token_status["linked"]:
        try:
            backups = services.remote.list_backups()
            click.echo(f"Remote backups: {len(backups)}")
            if backups:
                latest = backups[0].server_modified.astimezone()
                click.echo(f"Latest backup: {latest.strftime('%Y-%m-%d %H:%M:%S')}")
        except Exception as e:
            logger.debug(f"Could not list remote backups: {e}")
            click.echo(click.style(f"Remote backups: unavailable ({e})", fg="yellow"))

    pid = BackupScheduler.get_running_pid(settings.daemon_pid_file)
    daemon_text = (
        click.style(f"Running (PID {pid})", fg="green") if pid else "Stopped"
    )
    click.echo(f"Daemon: {daemon_text}")


# =============================================================================
# Backup / Restore Commands
# =============================================================================


@cli.command("backup")
@click.pass_context
def backup_command(ctx: click.Context) -> None:
    """
    Back up the event database to Dropbox now.

    Example:

        eventtracker-backup backup
    """
    try:
        services = _services(ctx)
    except SecureStoreError as e:
        _fail(str(e))

    click.echo("Creating encrypted backup...")
    outcome = services.orchestrator.backup_now()
    if not _report_outcome(outcome, "Backup"):
        sys.exit(1)


@cli.command("restore")
@click.option(
    "--list",
    "-l",
    "list_backups_flag",
    is_flag=True,
    help="List remote backups instead of restoring.",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def restore_command(ctx: click.Context, list_backups_flag: bool, yes: bool) -> None:
    """
    Restore the newest Dropbox backup over the local database.

    Examples:

        # List remote backups
        eventtracker-backup restore --list

        # Restore without confirmation
        eventtracker-backup restore --yes
    """
    logger = get_logger(__name__)

    try:
        services = _services(ctx)
    except SecureStoreError as e:
        _fail(str(e))

    if list_backups_flag:
        try:
            backups = services.remote.list_backups()
        except AuthenticationError as e:
            _fail(f"{e}. Run 'eventtracker-backup link' first.")
        except Exception as e:
            logger.error(f"Failed to list backups: {e}")
            _fail(str(e))

        if not backups:
            click.echo("No backups found.")
            return

        click.echo(f"Available backups ({len(backups)}):\n")
        for i, entry in enumerate(backups, 1):
            modified = entry.server_modified.astimezone().strftime("%Y-%m-%d %H:%M:%S")
            click.echo(f"  {i}. {entry.name}  ({modified})")
        return

    if not yes:
        click.echo(
            click.style(
                "This replaces all local data with the newest Dropbox backup.",
                fg="yellow",
            )
        )
        if not click.confirm("Continue?"):
            click.echo("Restore cancelled.")
            return

    click.echo("Downloading newest backup...")
    outcome = services.orchestrator.restore_latest()
    if isinstance(outcome, BackupError) and outcome.message == NO_BACKUPS_MESSAGE:
        click.echo(click.style("No backups found.", fg="yellow"), err=True)
        sys.exit(1)
    if not _report_outcome(outcome, "Restore"):
        sys.exit(1)


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Manage the backup daemon.

    The daemon runs in the foreground, backs up on start, on a fixed
    interval and whenever 'daemon trigger' is used.

    Examples:

        # Back up daily
        eventtracker-backup daemon start --interval 1d

        # Request a backup from the running daemon
        eventtracker-backup daemon trigger

        # Stop it
        eventtracker-backup daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help=(
        "Backup interval (e.g., '12h', '1d'). Enables periodic backups; "
        "defaults to backup_interval when daily_backup_enabled is set."
    ),
)
@click.option(
    "--no-immediate",
    is_flag=True,
    help="Skip the backup on daemon startup.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: str | None, no_immediate: bool
) -> None:
    """
    Start the backup daemon (blocks until stopped).

    The daemon will:
    - Back up on startup (unless --no-immediate)
    - Back up periodically when an interval is set
    - Retry failed backups with exponential backoff
    - Stop periodic backups if the Dropbox link stops working
    - Handle SIGTERM/SIGINT for graceful shutdown, SIGUSR1 to back up now
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]

    from eventtracker_backup.daemon import (
        BackupScheduler,
        DaemonAlreadyRunningError,
        DaemonError,
        parse_interval,
    )

    interval_seconds: int | None = None
    if interval is not None:
        try:
            interval_seconds = parse_interval(interval)
        except ValueError as e:
            _fail(str(e))
    elif settings.daily_backup_enabled:
        interval_seconds = settings.backup_interval

    try:
        services = _services(ctx)
        scheduler = BackupScheduler(
            services.orchestrator.run_scheduled_backup,
            pid_file=settings.daemon_pid_file,
        )
        if interval_seconds is not None:
            scheduler.set_periodic(interval_seconds)
        if not no_immediate:
            scheduler.enqueue_immediate()

        if interval_seconds is not None:
            click.echo(f"Starting daemon with {interval_seconds}s backup interval...")
        else:
            click.echo("Starting daemon (on-demand backups only)...")
        click.echo("Running in foreground (Ctrl+C to stop)")

        logger.info(f"Daemon starting (interval={interval_seconds})")
        scheduler.run()

        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))

    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'eventtracker-backup daemon stop' to stop the running daemon.")
        sys.exit(1)

    except (DaemonError, SecureStoreError) as e:
        logger.error(f"Daemon error: {e}")
        _fail(str(e))


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Stop the running backup daemon (after any in-progress backup)."""
    settings: BackupSettings = ctx.obj["settings"]

    from eventtracker_backup.daemon import BackupScheduler

    pid = BackupScheduler.get_running_pid(settings.daemon_pid_file)
    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if BackupScheduler.stop_running_daemon(settings.daemon_pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
    else:
        _fail("Failed to send stop signal to daemon.")


@daemon_group.command("trigger")
@click.pass_context
def daemon_trigger_command(ctx: click.Context) -> None:
    """Ask the running daemon to back up now."""
    settings: BackupSettings = ctx.obj["settings"]

    from eventtracker_backup.daemon import BackupScheduler

    if BackupScheduler.trigger_running_daemon(settings.daemon_pid_file):
        click.echo(click.style("Backup requested.", fg="green"))
    else:
        _fail("No daemon is currently running.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the backup daemon is running."""
    settings: BackupSettings = ctx.obj["settings"]
    verbose = ctx.obj.get("verbose", False)

    from eventtracker_backup.daemon import BackupScheduler, PIDFileManager

    pid_file = settings.daemon_pid_file

    click.echo("=== Daemon Status ===\n")

    pid = BackupScheduler.get_running_pid(pid_file)
    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        stale_pid = PIDFileManager(pid_file).read()
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")
            click.echo("The stale PID file will be cleaned up on next daemon start.")
        else:
            click.echo("No daemon is currently running.")

    if verbose:
        click.echo(f"\nPID file: {pid_file}")
