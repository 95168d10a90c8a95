"""
Worker process for executing jobs.

A worker owns one poller and one execution pool. The poller claims jobs and
hands them to Worker.perform, which runs each one in a pool slot through a
Performer. OS signals are translated into lifecycle calls by a control task.
"""

import asyncio
import logging
import os
import secrets
import signal
import socket
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import psutil
from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.config import Settings, get_settings, validate_polling_interval
from jobmill.constants import (
    LOG_REOPEN_SIGNAL,
    SHUTDOWN_SIGNALS,
    SOFT_RESTART_SIGNAL,
    WorkerState,
)
from jobmill.db.connection import Database, create_database
from jobmill.exceptions import InvalidWorkerStateError
from jobmill.observability.logging import reopen_log_files, setup_logging
from jobmill.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobmill.observability.tracing import setup_tracing
from jobmill.types.job import LockedBy
from jobmill.utils import shutdown_file_for
from jobmill.worker.handlers import JobRegistry
from jobmill.worker.handlers import registry as default_registry
from jobmill.worker.performer import Performer
from jobmill.worker.poller import Poller
from jobmill.worker.pool import Pool

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Claims serialized through the cluster-wide lock
    - Bounded execution pool, no local backlog
    - Graceful shutdown on SIGTERM/SIGINT, log reopen on SIGHUP
    - Soft restart on SIGUSR1: drain, exit and leave a marker for the supervisor
    - Optional memory ceiling
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        registry: JobRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker. The worker is not started.

        Args:
            settings: Worker configuration.
            database: Database handle used for claims and job transitions.
            registry: Job types this worker can perform. Defaults to the
                module level registry.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        validate_polling_interval(settings.worker_polling_interval_seconds)

        self.settings = settings
        self.database = database
        self.registry = registry or default_registry
        self.metrics = metrics or get_metrics()

        self.queues: list[str | None] = list(settings.worker_queues)
        self.pool_size = settings.worker_pool_size or len(self.queues) + 1
        self.polling_interval = settings.worker_polling_interval_seconds
        self.auto_terminate = settings.worker_auto_terminate

        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.id = str(LockedBy(self.hostname, self.pid, secrets.token_hex(3)))

        self.state = WorkerState.INITIALIZED
        self._lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._soft_shutdown = False

        self.pool = Pool(self.pool_size)
        if settings.worker_instant_repolling:
            self.pool.on_idle = self._on_pool_idle
        self.poller = Poller(self, before_poll=self._before_poll)

        self._signals: asyncio.Queue[signal.Signals | None] | None = None
        self._control_task: asyncio.Task[None] | None = None
        self._previous_handlers: dict[signal.Signals, Any] = {}

    @classmethod
    async def start_and_wait(cls, settings: Settings, database: Database, **kwargs: Any) -> "Worker":
        """Create and start a worker, then wait until it has shut down."""
        worker = cls(settings, database, **kwargs)
        await worker.start()
        await worker.wait()
        return worker

    @property
    def _log_extra(self) -> dict[str, Any]:
        return {"worker_id": self.id}

    @property
    def soft_shutdown_requested(self) -> bool:
        return self._soft_shutdown

    @property
    def idle(self) -> int:
        """Idle execution slots; zero once a soft shutdown has been requested."""
        if self._soft_shutdown:
            return 0
        return self.pool.idle

    def _assert_state(self, state: WorkerState) -> None:
        if self.state != state:
            raise InvalidWorkerStateError(
                f"Expected worker to be in state {state} but current state is {self.state}."
            )

    async def start(self) -> None:
        """
        Start the worker. Returns once the poller runs; use wait() to block.

        Raises:
            InvalidWorkerStateError: If the worker has already been started.
        """
        async with self._lock:
            self._assert_state(WorkerState.INITIALIZED)
            logger.info(
                "Starting up",
                extra={**self._log_extra, "queues": self.queues, "pool_size": self.pool_size},
            )
            self.state = WorkerState.RUNNING
            await self.poller.start()
            self._install_signal_handlers()
            logger.info("Started up", extra=self._log_extra)

    async def shutdown(self) -> None:
        """
        Stop the poller and wait for all running jobs to finish.

        Jobs are never cancelled. Subsequent calls are ignored.
        """
        if self.state == WorkerState.SHUTDOWN:
            return

        async with self._lock:
            if self.state == WorkerState.SHUTDOWN:
                return
            self._assert_state(WorkerState.RUNNING)
            logger.info("Shutting down", extra=self._log_extra)

            # State stays RUNNING until the poller is gone so that a cycle in
            # progress can still dispatch the jobs it committed.
            if self.poller.running:
                await self.poller.shutdown()
            else:
                await self.poller.wait()
            await self.pool.shutdown()

            if self._soft_shutdown:
                self.write_shutdown_file()

            self.state = WorkerState.SHUTDOWN
            self._remove_signal_handlers()
            self._stopped.set()
            logger.info("Shut down", extra=self._log_extra)

    async def soft_restart(self) -> None:
        """
        Stop claiming jobs, drain the pool, shut down and leave a shutdown
        marker so that the supervisor's watch command starts a replacement.
        """
        if self.state != WorkerState.RUNNING or self._soft_shutdown:
            return
        logger.info("Soft restart requested, no longer accepting new jobs", extra=self._log_extra)
        self._soft_shutdown = True
        await self.shutdown()

    async def wait(self) -> None:
        """Block until the worker has been shut down."""
        await self.poller.wait()
        await self.pool.wait()
        await self._stopped.wait()

    def perform(self, job_id: int) -> None:
        """
        Post a job to the execution pool.

        Never raises: pool saturation and any other dispatch error is passed
        to the exception callback.
        """
        try:
            self._assert_state(WorkerState.RUNNING)
            logger.info(f"Posting job {job_id} to execution pool", extra=self._log_extra)
            self.pool.post(lambda: self._perform(job_id))
        except Exception as exc:
            logger.error(f"Could not post job {job_id}: {exc}", extra=self._log_extra)
            self.settings.report_exception(exc)

    async def _perform(self, job_id: int) -> None:
        try:
            await Performer(job_id, self).perform()
        except Exception as exc:
            logger.error(
                f"Job {job_id} failed: {exc}",
                exc_info=True,
                extra={**self._log_extra, "job_id": job_id},
            )
            self.settings.report_exception(exc)

    async def transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run fn in a transaction, using the configured transaction callback."""
        callback = self.settings.tx_callback or self.database.transaction
        return await callback(fn)

    # ------------------------------------------------------------------
    # Memory ceiling
    # ------------------------------------------------------------------

    def current_memory_consumption(self) -> int | None:
        """Resident set size of this process in MB, None if unknown."""
        try:
            return psutil.Process(self.pid).memory_info().rss // (1024 * 1024)
        except psutil.Error:
            return None

    def check_memory(self) -> bool:
        """
        Returns False (and leaves a shutdown marker) if the process exceeds
        the configured memory ceiling.
        """
        mem = self.current_memory_consumption()
        if mem is None:
            logger.warning(
                f"Could not determine memory consumption of worker with pid {self.pid}",
                extra=self._log_extra,
            )
            return False

        max_mb = self.settings.worker_max_memory_mb
        if max_mb <= 0 or mem <= max_mb:
            return True

        self._soft_shutdown = True
        self.write_shutdown_file()
        logger.warning(
            f"Worker process memory consumption (RSS) of {mem}MB exceeds the configured "
            f"per-worker limit of {max_mb}MB and is now being shut down. Make sure that "
            "worker processes are watched (e.g. using the 'watch' command) for this worker "
            "to be restarted automatically.",
            extra=self._log_extra,
        )
        return False

    def write_shutdown_file(self) -> None:
        path = shutdown_file_for(self.pid, self.settings.pid_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()

    def _before_poll(self) -> bool:
        if self._soft_shutdown:
            return False
        return self.check_memory()

    def _on_pool_idle(self) -> None:
        if self.poller.running:
            self.poller.instant_repoll()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        self._signals = asyncio.Queue()

        signals = [LOG_REOPEN_SIGNAL, SOFT_RESTART_SIGNAL]
        if self.auto_terminate:
            signals = [*SHUTDOWN_SIGNALS, *signals]

        for sig in signals:
            previous = signal.getsignal(sig)
            try:
                loop.add_signal_handler(sig, self._signals.put_nowait, sig)
            except (RuntimeError, ValueError) as exc:
                # Only the main thread of the main interpreter may install handlers
                logger.warning(f"Could not install handler for {sig.name}: {exc}", extra=self._log_extra)
                continue
            self._previous_handlers[sig] = previous

        self._control_task = asyncio.create_task(
            self._control_loop(), name=f"jobmill-control-{self.id}"
        )

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig, previous in self._previous_handlers.items():
            loop.remove_signal_handler(sig)
            if previous is not None:
                signal.signal(sig, previous)
        self._previous_handlers.clear()

        if self._signals is not None:
            self._signals.put_nowait(None)

    async def _control_loop(self) -> None:
        assert self._signals is not None
        while True:
            sig = await self._signals.get()
            if sig is None:
                return
            try:
                await self._handle_signal(sig)
            except Exception as exc:
                logger.exception(f"Handling {sig.name} failed", extra=self._log_extra)
                self.settings.report_exception(exc)

    async def _handle_signal(self, sig: signal.Signals) -> None:
        if sig in SHUTDOWN_SIGNALS:
            logger.info(f"Caught {sig.name}, shutting worker down...", extra=self._log_extra)
            await self.shutdown()
        elif sig == LOG_REOPEN_SIGNAL:
            count = reopen_log_files()
            logger.info(f"Caught {sig.name}, re-opened {count} log files", extra=self._log_extra)
        elif sig == SOFT_RESTART_SIGNAL:
            logger.info(f"Caught {sig.name}, restarting softly...", extra=self._log_extra)
            await self.soft_restart()


async def run_async(settings: Settings | None = None) -> None:
    """Run a worker until it shuts down."""
    settings = settings or get_settings()
    setup_logging(settings)
    setup_metrics(settings.prometheus_port)
    if settings.otel_enabled:
        setup_tracing(settings)

    database = create_database(settings)
    try:
        await Worker.start_and_wait(settings, database)
    finally:
        await database.dispose()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
