"""
Process supervisor.

Manages a fixed set of worker definitions, each running as a detached OS
process with its own pid file. Commands return the shell exit codes defined
in jobmill.constants.
"""

import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import typer

from jobmill.config import Settings
from jobmill.constants import (
    EXIT_OK,
    EXIT_UNEXPECTED_STATUS,
    KILL_SIGNALS,
    LOG_REOPEN_SIGNAL,
    SHUTDOWN_SIGNALS,
    SOFT_RESTART_SIGNAL,
)
from jobmill.exceptions import ConfigurationError, DaemonError
from jobmill.utils import process_alive, shutdown_file_for

logger = logging.getLogger(__name__)

DEFAULT_WORKER_NAME = "Job Worker"
DEFAULT_WORKER_COMMAND = (sys.executable, "-m", "jobmill.worker.main")

# Severity of start messages: they are printed only if one has severity 1
_SEVERITY_STARTING = 1
_SEVERITY_ALREADY_STARTED = 2


@dataclass
class WorkerDefinition:
    """A worker process managed by the daemon."""

    id: int
    name: str
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    pid: int | None = None


class Daemon:
    """
    Supervisor for worker processes.

    Example:
        daemon = Daemon(settings)
        daemon.add_worker("Mailer", ["python", "-m", "myapp.mailer_worker"])
        daemon.add_worker("Reports", env={"WORKER_QUEUES": '["reports"]'})
        exit_code = daemon.watch()
    """

    def __init__(self, settings: Settings, pidfile: str | None = None):
        """
        Args:
            settings: Supervisor settings (pid_dir, stop file, timeouts).
            pidfile: Pid file path template. Must contain "{id}" when more
                than one worker is defined.
        """
        self.settings = settings
        self.workers: list[WorkerDefinition] = []
        self._pidfile = pidfile
        self._frozen_pidfile: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Daemon":
        """Daemon running settings.daemon_worker_count default workers."""
        daemon = cls(settings)
        for _ in range(settings.daemon_worker_count):
            daemon.add_worker()
        return daemon

    def add_worker(
        self,
        name: str = DEFAULT_WORKER_NAME,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> WorkerDefinition:
        """
        Define a worker process.

        Args:
            name: Display name.
            command: Command line of the process. Defaults to running a
                worker configured from the environment.
            env: Extra environment variables for the process.

        Raises:
            ConfigurationError: If the pid file template is already in use.
        """
        if self._frozen_pidfile is not None:
            raise ConfigurationError("Workers must be defined before the first command runs.")

        worker = WorkerDefinition(
            id=len(self.workers) + 1,
            name=name,
            command=list(command or DEFAULT_WORKER_COMMAND),
            env=dict(env or {}),
        )
        self.workers.append(worker)
        return worker

    @property
    def pidfile(self) -> str:
        """
        The validated pid file template.

        Fixed on first use, which also closes the worker set.

        Raises:
            ConfigurationError: If no workers are defined or the template
                does not fit the number of workers.
        """
        if self._frozen_pidfile is not None:
            return self._frozen_pidfile

        count = len(self.workers)
        if count < 1:
            raise ConfigurationError("No workers are defined.")

        if self._pidfile is None:
            name = "jobmill.{id}.pid" if count > 1 else "jobmill.pid"
            template = str(Path(self.settings.pid_dir) / name)
        elif count > 1 and "{id}" not in self._pidfile:
            raise ConfigurationError(
                'Pidfile must include placeholder "{id}" for worker id when defining more than one worker.'
            )
        else:
            template = self._pidfile

        self._frozen_pidfile = template
        return template

    def pid_file_for(self, worker: WorkerDefinition) -> Path:
        return Path(self.pidfile.format(id=worker.id))

    def read_pid(self, worker: WorkerDefinition) -> tuple[Path | None, int | None, bool]:
        """
        Read the pid file of a worker.

        Returns:
            (pid file or None if missing, pid or None if empty, process alive)
        """
        path = self.pid_file_for(worker)
        if not path.exists():
            return None, None, False

        raw_pid = path.read_text().strip()
        if not raw_pid:
            return path, None, False

        pid = int(raw_pid)
        return path, pid, process_alive(pid)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(self, quiet: bool = False) -> int:
        """
        Start all workers that are not running.

        Returns:
            0, or 2 if a worker was already running.
        """
        code = EXIT_OK
        messages: list[tuple[str, int]] = []

        for worker in self.workers:
            pid_file, pid, active = self.read_pid(worker)
            label = f"Worker #{worker.id} ({worker.name})"

            if pid_file and pid and active:
                if not quiet:
                    messages.append((f"{label}: Already started (PID {pid})", _SEVERITY_ALREADY_STARTED))
                code = EXIT_UNEXPECTED_STATUS
            elif pid_file:
                pid_file.unlink(missing_ok=True)

                shutdown_file = shutdown_file_for(pid, self.settings.pid_dir) if pid else None
                if shutdown_file is not None and not shutdown_file.exists():
                    shutdown_file = None

                # A shutdown marker means the worker exited on purpose
                if not (quiet or shutdown_file):
                    messages.append((f"{label}: Starting (stale pid file)", _SEVERITY_STARTING))
                self.start_worker(worker)
                if shutdown_file is not None:
                    shutdown_file.unlink(missing_ok=True)
            else:
                if not quiet:
                    messages.append((f"{label}: Starting", _SEVERITY_STARTING))
                self.start_worker(worker)

        if messages and min(severity for _, severity in messages) == _SEVERITY_STARTING:
            for message, _ in messages:
                typer.echo(message, err=True)

        return code

    def stop(self, kill: bool = False, quiet: bool = False) -> int:
        """
        Stop all running workers and wait for them to exit.

        Args:
            kill: Send SIGKILL instead of SIGTERM/SIGINT.
            quiet: Suppress output.

        Returns:
            0, or 2 if a worker was already stopped.
        """
        code = EXIT_OK

        for worker in self.workers:
            pid_file, pid, active = self.read_pid(worker)
            label = f"Worker ({worker.name}) #{worker.id}"

            if pid_file and pid and active:
                if not quiet:
                    typer.echo(f"{label}: Stopping")
                self.stop_worker(pid_file, pid, kill=kill)
            elif pid_file:
                pid_file.unlink(missing_ok=True)
                if not quiet:
                    typer.echo(f"{label}: Already stopped (stale PID file)")
            else:
                if not quiet:
                    typer.echo(f"{label}: Already stopped", err=True)
                code = EXIT_UNEXPECTED_STATUS

        return code

    def status(self, quiet: bool = False) -> int:
        """
        Report whether each worker is running.

        Returns:
            0 if all workers run, 2 otherwise.
        """
        code = EXIT_OK

        for worker in self.workers:
            pid_file, pid, active = self.read_pid(worker)
            label = f"Worker #{worker.id} ({worker.name})"

            if pid_file and pid and active:
                if not quiet:
                    typer.echo(f"{label}: Running")
            elif pid_file:
                if not quiet:
                    typer.echo(f"{label}: Not running (stale PID file)", err=True)
                code = EXIT_UNEXPECTED_STATUS
            else:
                if not quiet:
                    typer.echo(f"{label}: Not running", err=True)
                code = EXIT_UNEXPECTED_STATUS

        return code

    def watch(self) -> int:
        """
        Start the workers if they should run but do not.

        Workers should run unless the configured stop file exists.
        """
        stop_file = self.settings.daemon_stop_file
        should_be_running = not (stop_file and Path(stop_file).exists())

        if should_be_running and self.status(quiet=True) != EXIT_OK:
            return self.start(quiet=self.settings.silence_watcher)
        return EXIT_OK

    def restart(self) -> int:
        """Stop, then start all workers."""
        self.stop()
        return self.start()

    def restart_logging(self) -> int:
        """Ask all running workers to re-open their log files."""
        return self._signal_workers(
            LOG_REOPEN_SIGNAL,
            success="Sent signal for restart-logging",
            failure="Could not send signal for restart-logging, process not found",
        )

    def soft_restart(self) -> int:
        """
        Ask all running workers to finish their jobs and exit. Returns
        immediately; a later watch starts the replacements.
        """
        return self._signal_workers(
            SOFT_RESTART_SIGNAL,
            success="Sent soft-restart signal",
            failure="Process not found",
        )

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def start_worker(self, worker: WorkerDefinition) -> int:
        """
        Spawn a detached worker process and write its pid file.

        Returns:
            The pid of the new process.
        """
        pid_file = self.pid_file_for(worker)
        pid_file.parent.mkdir(parents=True, exist_ok=True)

        env = {**os.environ, "PID_DIR": str(self.settings.pid_dir), **worker.env}
        logger.debug(f"Spawning worker #{worker.id} ({worker.name}): {worker.command}")

        # New session: the worker survives signals sent to the supervisor's terminal
        process = subprocess.Popen(
            worker.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
            env=env,
        )
        worker.pid = process.pid
        pid_file.write_text(str(process.pid))

        # Reap the child once it exits
        threading.Thread(
            target=process.wait,
            name=f"jobmill-reaper-{process.pid}",
            daemon=True,
        ).start()

        logger.debug(f"Worker #{worker.id} ({worker.name}) spawned with PID {process.pid}")
        return process.pid

    def stop_worker(self, pid_file: Path, pid: int, kill: bool = False) -> None:
        """
        Signal a worker until its process is gone, then remove the pid file.

        Raises:
            DaemonError: If the process outlives daemon_stop_timeout_seconds.
        """
        signals = KILL_SIGNALS if kill else SHUTDOWN_SIGNALS
        timeout = self.settings.daemon_stop_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        logger.debug(f"Stopping PID {pid} with signals {[sig.name for sig in signals]}")
        while True:
            try:
                for sig in signals:
                    os.kill(pid, sig)
            except ProcessLookupError:
                break

            if deadline is not None and time.monotonic() > deadline:
                raise DaemonError(f"Worker with PID {pid} did not stop within {timeout} seconds.")
            time.sleep(self.settings.daemon_stop_poll_interval_seconds)

        logger.debug(f"PID {pid} stopped")
        pid_file.unlink(missing_ok=True)

    def _signal_workers(self, sig: int, success: str, failure: str) -> int:
        code = EXIT_OK

        for worker in self.workers:
            _pid_file, pid, active = self.read_pid(worker)
            if not (pid and active):
                continue

            label = f"Worker ({worker.name}) #{worker.id}"
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                typer.echo(f"{label}: {failure}", err=True)
                code = EXIT_UNEXPECTED_STATUS
            else:
                typer.echo(f"{label}: {success}")

        return code
