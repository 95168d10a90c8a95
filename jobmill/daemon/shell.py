"""
Supervisor command line.

    jobmill-daemon start|stop|kill|status|watch|restart|restart-logging|soft-restart|usage

Exactly one command is accepted. Commands are serialized per machine through
an advisory lock on settings.daemon_lockfile.
"""

import fcntl
import logging
import sys
import traceback
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from typing import IO

import typer

from jobmill.config import get_settings
from jobmill.constants import EXIT_ERROR, EXIT_FATAL, EXIT_OK
from jobmill.daemon.main import Daemon
from jobmill.exceptions import LockNotAvailableError

logger = logging.getLogger(__name__)

COMMANDS = (
    "start",
    "stop",
    "kill",
    "status",
    "watch",
    "restart",
    "restart-logging",
    "soft-restart",
    "usage",
)

USAGE = """\
Usage: {prog} start|stop|kill|status|watch|restart|restart-logging|soft-restart|usage

Options:

  start
    Start the daemon

  stop
    Stop the daemon

  kill
    Kill the daemon

  status
    Query the status of the daemon. Exit with status 2 if any worker is
    not running.

  watch
    Checks the status (running or stopped) and whether it is as
    expected. Starts the daemon if it is expected to run but is not.

  restart
    Shortcut for consecutive 'stop' and 'start'.

  restart-logging
    Re-opens log files, useful e.g. after the log files have been moved or
    removed by log rotation.

  soft-restart
    Signals workers to restart gracefully. Idle workers restart
    immediately; busy workers finish their current jobs first. Returns
    immediately. Requires 'watch' (e.g. via cron) to start fresh workers;
    without it, this behaves like a graceful stop.

  usage
    Show this message

Exit status:
 0 if OK,
 1 on fatal errors outside of jobmill,
 2 if at least one worker has an unexpected status,
 99 on all other errors.
"""


def usage() -> None:
    typer.echo(USAGE.format(prog="jobmill-daemon"), err=True)


@contextmanager
def shell_lock(path: str, blocking: bool = True, enabled: bool = True) -> Iterator[IO[str] | None]:
    """
    Hold an exclusive flock on path.

    Raises:
        LockNotAvailableError: If blocking is False and another command holds the lock.
    """
    if not enabled:
        yield None
        return

    lockfile = open(path, "a")
    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    try:
        fcntl.flock(lockfile, flags)
    except BlockingIOError:
        lockfile.close()
        raise LockNotAvailableError(
            "Could not acquire lock. Is another jobmill command already running?"
        ) from None

    try:
        yield lockfile
    finally:
        fcntl.flock(lockfile, fcntl.LOCK_UN)
        lockfile.close()


def create_app(daemon: Daemon) -> typer.Typer:
    """Typer application whose commands return exit codes."""
    settings = daemon.settings
    app = typer.Typer(add_completion=False, help="Manage jobmill worker processes")

    def locked(blocking: bool = True) -> AbstractContextManager[IO[str] | None]:
        return shell_lock(settings.daemon_lockfile, blocking=blocking, enabled=settings.lock_shell_commands)

    @app.command()
    def start() -> int:
        with locked():
            return daemon.start()

    @app.command()
    def stop() -> int:
        with locked():
            return daemon.stop()

    @app.command()
    def kill() -> int:
        try:
            with locked(blocking=False):
                return daemon.stop(kill=True)
        except LockNotAvailableError as exc:
            typer.echo(str(exc), err=True)
            return EXIT_FATAL

    @app.command()
    def status() -> int:
        with locked():
            return daemon.status()

    @app.command()
    def watch() -> int:
        try:
            with locked(blocking=False):
                return daemon.watch()
        except LockNotAvailableError as exc:
            typer.echo(str(exc), err=True)
            return EXIT_FATAL

    @app.command()
    def restart() -> int:
        with locked():
            return daemon.restart()

    @app.command("restart-logging")
    def restart_logging() -> int:
        with locked():
            return daemon.restart_logging()

    @app.command("soft-restart")
    def soft_restart() -> int:
        with locked():
            return daemon.soft_restart()

    @app.command("usage")
    def show_usage() -> int:
        usage()
        return EXIT_OK

    return app


def main(daemon: Daemon, argv: Sequence[str] | None = None) -> int:
    """
    Run one supervisor command.

    Args:
        daemon: The configured supervisor.
        argv: Command line arguments without the program name.

    Returns:
        The exit code.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1 or args[0] not in COMMANDS:
        usage()
        return EXIT_ERROR

    command = typer.main.get_command(create_app(daemon))
    try:
        # Raises ConfigurationError for missing workers or a bad pid file template
        daemon.pidfile
        result = command.main(args=args, prog_name="jobmill-daemon", standalone_mode=False)
    except Exception:
        typer.echo(traceback.format_exc(), err=True)
        return EXIT_ERROR

    logger.debug(f"Command {args[0]} finished with exit code {result}")
    return int(result) if result is not None else EXIT_OK


def run() -> None:
    """Console entry point supervising settings.daemon_worker_count workers."""
    sys.exit(main(Daemon.from_settings(get_settings())))
