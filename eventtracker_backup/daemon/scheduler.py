"""
Backup scheduler for the foreground daemon.

Provides a BackupScheduler class that manages:
- One pending immediate backup job (a new request replaces the old one)
- A periodic backup job whose interval can be changed in place
- Exponential backoff for runs that ask to be retried
- Signal handling for graceful shutdown (SIGTERM/SIGINT) and SIGUSR1 triggers
- PID file management for daemon control
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from eventtracker_backup.utils.paths import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)


# Default PID file location
DEFAULT_PID_DIR = DEFAULT_CONFIG_DIR
DEFAULT_PID_FILE = DEFAULT_PID_DIR / "daemon.pid"

DEFAULT_PERIODIC_INTERVAL = 86400  # 1 day

# Retry backoff for RETRY verdicts
DEFAULT_RETRY_INITIAL_DELAY = 30.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 3600.0  # seconds
DEFAULT_RETRY_MAX_ATTEMPTS = 5

JOB_IMMEDIATE = "immediate"
JOB_PERIODIC = "periodic"

# Upper bound for one sleep slice in the main loop
POLL_INTERVAL = 1.0


class WorkVerdict(Enum):
    """Result of one scheduled run, as seen by the scheduler."""

    SUCCESS = "success"
    RETRY = "retry"
    FAILURE = "failure"


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DaemonStats:
    """
    Statistics from daemon operation.

    Tracks daemon uptime and backup run results.
    """

    started_at: datetime = field(default_factory=datetime.now)
    run_count: int = 0
    success_count: int = 0
    retry_count: int = 0
    failure_count: int = 0
    last_run_at: datetime | None = None
    last_verdict: WorkVerdict | None = None
    last_error: str | None = None


@dataclass
class ScheduledJob:
    """
    A pending backup run.

    Attributes:
        name: JOB_IMMEDIATE or JOB_PERIODIC
        due_at: Wall-clock time (epoch seconds) the job becomes runnable
        attempt: Consecutive RETRY verdicts so far
    """

    name: str
    due_at: float
    attempt: int = 0


class PIDFileManager:
    """
    Manages PID file for daemon process.

    Provides methods to create, read, and remove PID files for
    daemon process management and duplicate prevention.
    """

    def __init__(self, pid_file: Path | None = None):
        """
        Initialize the PID file manager.

        Args:
            pid_file: PID file path (default ~/.eventtracker-backup/daemon.pid)
        """
        self.pid_file = pid_file or DEFAULT_PID_FILE

    def create(self) -> None:
        """
        Create the PID file with the current process ID.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid = os.getpid()
            self.pid_file.write_text(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The PID stored in the file, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the PID file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        content = ""
        try:
            content = self.pid_file.read_text().strip()
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

    def remove(self) -> None:
        """Remove the PID file if it exists."""
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """
        Check if a process with the given PID is running.

        Args:
            pid: Process ID to check.

        Returns:
            True if the process is running, False otherwise.
        """
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True


class BackupScheduler:
    """
    Runs backup work on demand and on a fixed period.

    At most one immediate job and one periodic job are pending at any time,
    and only one job runs at a time. The work callable reports a
    WorkVerdict: RETRY reschedules the job with exponential backoff, and a
    FAILURE from the periodic job cancels it (the account must be relinked
    before scheduled backups can succeed again).

    Usage:
        scheduler = BackupScheduler(orchestrator.run_scheduled_backup)
        scheduler.set_periodic(86400)
        scheduler.enqueue_immediate()

        # Run (blocks until shutdown signal)
        scheduler.run()

    Attributes:
        pid_file: Path to PID file
        stats: Daemon statistics
    """

    def __init__(
        self,
        work: Callable[[], WorkVerdict],
        pid_file: Path | None = None,
        retry_initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the scheduler.

        Args:
            work: Callable performing one backup run
            pid_file: Path to PID file. Defaults to ~/.eventtracker-backup/daemon.pid
            retry_initial_delay: First retry delay in seconds (default 30)
            retry_max_delay: Maximum retry delay in seconds (default 1 hour)
            retry_max_attempts: RETRY verdicts before a job gives up (default 5)
            clock: Wall-clock source, epoch seconds
        """
        self._work = work
        self._pid_manager = PIDFileManager(pid_file)
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.retry_max_attempts = max(1, retry_max_attempts)
        self._clock = clock

        # Reentrant: the SIGUSR1 handler may run while the main thread holds it
        self._lock = threading.RLock()
        self._immediate: ScheduledJob | None = None
        self._periodic: ScheduledJob | None = None
        self._periodic_interval = DEFAULT_PERIODIC_INTERVAL

        self._running = False
        self._shutdown_requested = False
        self._wakeup_requested = False
        self._original_handlers: dict[int, object] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path:
        """Get the PID file path."""
        return self._pid_manager.pid_file

    # =========================================================================
    # Job management
    # =========================================================================

    def enqueue_immediate(self) -> None:
        """Schedule a backup as soon as possible, replacing any pending one."""
        with self._lock:
            if self._immediate is not None:
                logger.debug("Replacing pending immediate backup")
            self._immediate = ScheduledJob(JOB_IMMEDIATE, self._clock())
            self._wakeup_requested = True
        logger.info("Immediate backup enqueued")

    def set_periodic(self, interval: int = DEFAULT_PERIODIC_INTERVAL) -> None:
        """
        Install the periodic backup job, or update its interval in place.

        Args:
            interval: Seconds between runs

        Raises:
            ValueError: If interval is not positive
        """
        if interval <= 0:
            raise ValueError(f"Periodic interval must be positive, got {interval}")

        with self._lock:
            now = self._clock()
            if self._periodic is None:
                self._periodic = ScheduledJob(JOB_PERIODIC, now + interval)
                logger.info(f"Periodic backup scheduled every {interval}s")
            elif interval != self._periodic_interval:
                self._periodic.due_at = now + interval
                logger.info(f"Periodic backup interval updated to {interval}s")
            self._periodic_interval = interval

    def cancel_periodic(self) -> None:
        """Remove the periodic backup job."""
        with self._lock:
            cancelled = self._periodic is not None
            self._periodic = None
        if cancelled:
            logger.info("Periodic backup cancelled")

    @property
    def periodic_interval(self) -> int | None:
        """Interval of the periodic job, or None if there is none."""
        with self._lock:
            return self._periodic_interval if self._periodic is not None else None

    def has_immediate(self) -> bool:
        """True if an immediate job is pending."""
        with self._lock:
            return self._immediate is not None

    def next_due(self) -> float | None:
        """Earliest due time of any pending job."""
        with self._lock:
            jobs = [j for j in (self._immediate, self._periodic) if j is not None]
        return min((j.due_at for j in jobs), default=None)

    def _retry_delay(self, attempt: int) -> float:
        delay: float = self.retry_initial_delay * (2 ** (attempt - 1))
        return min(delay, self.retry_max_delay)

    def _take_due_job(self, now: float) -> ScheduledJob | None:
        with self._lock:
            if self._immediate is not None and self._immediate.due_at <= now:
                job = self._immediate
                self._immediate = None
                return job
            if self._periodic is not None and self._periodic.due_at <= now:
                return self._periodic
            return None

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(self, job: ScheduledJob) -> WorkVerdict:
        self.stats.run_count += 1
        self.stats.last_run_at = datetime.now()
        logger.info(
            f"Starting {job.name} backup (run #{self.stats.run_count}, "
            f"attempt {job.attempt + 1})"
        )
        try:
            verdict = self._work()
            self.stats.last_error = None
        except Exception as e:
            logger.error(f"Backup run raised an exception: {e}")
            self.stats.last_error = str(e)
            verdict = WorkVerdict.RETRY

        self.stats.last_verdict = verdict
        if verdict is WorkVerdict.SUCCESS:
            self.stats.success_count += 1
        elif verdict is WorkVerdict.RETRY:
            self.stats.retry_count += 1
        else:
            self.stats.failure_count += 1
        return verdict

    def step(self, now: float | None = None) -> WorkVerdict | None:
        """
        Run the next due job, if any, and reschedule it.

        Args:
            now: Current time in epoch seconds (defaults to the clock)

        Returns:
            The verdict of the job that ran, or None if nothing was due
        """
        clock_driven = now is None
        if now is None:
            now = self._clock()

        job = self._take_due_job(now)
        if job is None:
            return None

        verdict = self._execute(job)
        finished = self._clock() if clock_driven else now

        with self._lock:
            if job.name == JOB_IMMEDIATE:
                self._reschedule_immediate(job, verdict, finished)
            elif self._periodic is job:
                self._reschedule_periodic(job, verdict, finished)
        return verdict

    def _reschedule_immediate(
        self, job: ScheduledJob, verdict: WorkVerdict, now: float
    ) -> None:
        if verdict is not WorkVerdict.RETRY:
            return
        if self._immediate is not None:
            # A newer request replaced this one while it ran
            return

        job.attempt += 1
        if job.attempt >= self.retry_max_attempts:
            logger.error(f"Immediate backup gave up after {job.attempt} attempts")
            return
        delay = self._retry_delay(job.attempt)
        job.due_at = now + delay
        self._immediate = job
        logger.info(f"Immediate backup will retry in {delay:.0f}s")

    def _reschedule_periodic(
        self, job: ScheduledJob, verdict: WorkVerdict, now: float
    ) -> None:
        if verdict is WorkVerdict.FAILURE:
            self._periodic = None
            logger.error(
                "Periodic backup cancelled: Dropbox authorization failed, "
                "relink the account to resume scheduled backups"
            )
            return

        if verdict is WorkVerdict.RETRY:
            job.attempt += 1
            if job.attempt < self.retry_max_attempts:
                delay = self._retry_delay(job.attempt)
                job.due_at = now + delay
                logger.info(f"Periodic backup will retry in {delay:.0f}s")
                return
            logger.error(
                f"Periodic backup gave up after {job.attempt} attempts; "
                "waiting for the next period"
            )

        job.attempt = 0
        job.due_at = now + self._periodic_interval

    # =========================================================================
    # Daemon loop
    # =========================================================================

    def _setup_signal_handlers(self) -> None:
        """Install handlers for SIGTERM/SIGINT (stop) and SIGUSR1 (trigger)."""
        for signum, handler in (
            (signal.SIGTERM, self._signal_handler),
            (signal.SIGINT, self._signal_handler),
            (signal.SIGUSR1, self._trigger_handler),
        ):
            self._original_handlers[signum] = signal.signal(signum, handler)
        logger.debug("Signal handlers installed for SIGTERM, SIGINT and SIGUSR1")

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown_requested = True

    def _trigger_handler(self, signum: int, frame: object) -> None:
        logger.info("Received SIGUSR1, backup requested")
        self.enqueue_immediate()

    def _sleep_interruptible(self, seconds: float) -> bool:
        """
        Sleep for up to ``seconds``, waking early on shutdown or a new job.

        Uses wall-clock time so a system suspend does not delay due jobs.

        Returns:
            True if sleep completed or was cut short by a new job, False if
            shutdown was requested
        """
        end_time = time.time() + seconds
        while (
            time.time() < end_time
            and not self._shutdown_requested
            and not self._wakeup_requested
        ):
            remaining = end_time - time.time()
            sleep_time = min(POLL_INTERVAL, max(0.0, remaining))
            if sleep_time > 0:
                time.sleep(sleep_time)

        self._wakeup_requested = False
        return not self._shutdown_requested

    def run(self) -> None:
        """
        Run the scheduler until a shutdown signal is received.

        Manages PID file creation and cleanup, signal handler setup, and the
        main loop.

        Raises:
            DaemonAlreadyRunningError: If another daemon is already running.
            PIDFileError: If the PID file cannot be written.
        """
        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()
        self._running = True
        self._shutdown_requested = False
        self.stats = DaemonStats()

        try:
            while not self._shutdown_requested:
                self.step()
                if self._shutdown_requested:
                    break

                due = self.next_due()
                if due is None:
                    wait = POLL_INTERVAL
                else:
                    wait = max(0.0, due - self._clock())
                    logger.debug(f"Next backup due in {wait:.0f}s")
                if not self._sleep_interruptible(wait):
                    break
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info("Daemon scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; safe to call from the work callable or another thread."""
        logger.info("Stop requested")
        self._shutdown_requested = True

    def is_running(self) -> bool:
        """True while run() is active."""
        return self._running

    # =========================================================================
    # Control of a daemon in another process
    # =========================================================================

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """
        Get the PID of the currently running daemon.

        Args:
            pid_file: Path to PID file. Defaults to standard location.

        Returns:
            PID if a daemon is running, None otherwise.
        """
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is None:
            return None
        if manager.is_process_running(pid):
            return pid
        return None

    @classmethod
    def _signal_running_daemon(
        cls, signum: signal.Signals, pid_file: Path | None = None
    ) -> bool:
        pid = cls.get_running_pid(pid_file)
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signum)
            logger.info(f"Sent {signum.name} to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        return cls._signal_running_daemon(signal.SIGTERM, pid_file)

    @classmethod
    def trigger_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Ask the running daemon for an immediate backup (SIGUSR1).

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        return cls._signal_running_daemon(signal.SIGUSR1, pid_file)


__all__ = [
    "BackupScheduler",
    "DaemonAlreadyRunningError",
    "DaemonError",
    "DaemonStats",
    "DEFAULT_PID_DIR",
    "DEFAULT_PID_FILE",
    "PIDFileError",
    "PIDFileManager",
    "ScheduledJob",
    "WorkVerdict",
]
