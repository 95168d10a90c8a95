"""
Database poller that discovers and claims jobs for its worker.

Each cycle takes the cluster-wide lock, claims as many eligible jobs as the
worker has idle slots (one per named queue, any number from the open queue)
and hands them to the worker once the claiming transaction has committed.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import MAX_LOCK_TIMEOUT, MIN_LOCK_TIMEOUT, SPAN_POLL_CYCLE, JobState
from jobmill.db.locks import GlobalLock
from jobmill.db.repository import JobRepository
from jobmill.exceptions import GlobalLockError, InvalidWorkerStateError
from jobmill.observability.tracing import get_tracer
from jobmill.types.job import LockedBy
from jobmill.utils import process_alive

if TYPE_CHECKING:
    from jobmill.worker.main import Worker

logger = logging.getLogger(__name__)


class _PollerStopped(Exception):
    """Raised inside the claim transaction to roll it back."""


class Poller:
    """
    Scheduling loop of one worker.

    States: not running -> running -> stopped. shutdown() interrupts the
    current sleep; any exception escaping a poll cycle stops the loop and
    shuts the whole worker down.
    """

    def __init__(self, worker: "Worker", before_poll: Callable[[], bool] = lambda: True):
        """
        Args:
            worker: The worker to serve.
            before_poll: Called before each cycle; returning False shuts the
                worker down instead of polling.
        """
        self.worker = worker
        self._before_poll = before_poll
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._global_lock = GlobalLock(worker.database.engine, worker.settings.global_lock_name)
        self._global_lock_fails = 0
        self._max_global_lock_fails_reached = False
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def global_lock_fails(self) -> int:
        """Consecutive cycles that could not obtain the cluster lock."""
        return self._global_lock_fails

    @property
    def lock_timeout(self) -> float:
        return max(MIN_LOCK_TIMEOUT, min(MAX_LOCK_TIMEOUT, self.worker.polling_interval))

    async def start(self) -> None:
        """
        Start the poll loop as a background task.

        Raises:
            InvalidWorkerStateError: If the poller is already running.
        """
        if self._running:
            raise InvalidWorkerStateError("Poller is already running.")
        self._running = True

        if self.worker.settings.clean_stuck_jobs:
            await self.clean_stuck_jobs()

        self._task = asyncio.create_task(self._loop(), name=f"jobmill-poller-{self.worker.id}")

    async def shutdown(self) -> None:
        """
        Stop the loop at its next interruption point and wait for it.

        Raises:
            InvalidWorkerStateError: If the poller is not running.
        """
        if not self._running:
            raise InvalidWorkerStateError("Poller is not running.")
        self._running = False
        self._wakeup.set()
        await self.wait()

    async def wait(self) -> None:
        """Wait for the loop task to exit."""
        if self._task is not None:
            await self._task

    def instant_repoll(self) -> None:
        """Cut the current sleep short and poll again right away."""
        logger.debug("Aborting next sleep to perform instant repoll", extra={"worker_id": self.worker.id})
        self._wakeup.set()

    async def _loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            try:
                if not self._before_poll():
                    self._request_worker_shutdown()
                    await self._sleep()
                    continue

                await self.poll()
                await self._sleep()
            except Exception as exc:
                logger.exception(
                    "Poll encountered exception, worker shutting down",
                    extra={"worker_id": self.worker.id},
                )
                self._running = False
                self._request_worker_shutdown()
                if not self.worker.settings.silence_poller_exceptions:
                    try:
                        self.worker.settings.report_exception(exc)
                    except Exception:
                        logger.exception(
                            "Exception callback failed",
                            extra={"worker_id": self.worker.id},
                        )
                break

    def _request_worker_shutdown(self) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self.worker.shutdown())
            self._shutdown_task.add_done_callback(self._log_shutdown_failure)

    def _log_shutdown_failure(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Worker shutdown requested by the poller failed",
                exc_info=exc,
                extra={"worker_id": self.worker.id},
            )

    async def _sleep(self) -> None:
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.worker.polling_interval)
        except TimeoutError:
            pass

    async def poll(self) -> list[int]:
        """
        Run one poll cycle.

        Returns:
            IDs of the jobs claimed and dispatched in this cycle.
        """
        job_ids: list[int] = []

        with get_tracer().start_as_current_span(SPAN_POLL_CYCLE) as span:
            span.set_attribute("worker_id", self.worker.id)

            async with self._global_lock.hold(self.lock_timeout) as acquired:
                if not self._record_global_lock_result(acquired):
                    return []
                try:
                    job_ids = await self.worker.transaction(self._claim)
                except _PollerStopped:
                    logger.info(
                        "Rolled back transaction to unlock jobs, as worker has been shut down in the meantime",
                        extra={"worker_id": self.worker.id},
                    )
                    return []

            span.set_attribute("claimed", len(job_ids))

        if job_ids:
            self.worker.metrics.record_jobs_claimed(self.worker.id, len(job_ids))

        # Committed claims are dispatched outside the transaction and the lock
        for job_id in job_ids:
            self.worker.perform(job_id)

        return job_ids

    async def _claim(self, session: AsyncSession) -> list[int]:
        # Only this task posts into the pool, so idle can only grow until dispatch
        idle = self.worker.idle
        self.worker.metrics.update_pool_idle(self.worker.id, idle)
        logger.debug(
            f"Polling DB for jobs ({idle} available slots)...",
            extra={"worker_id": self.worker.id},
        )

        claimed: list[int] = []
        if idle > 0:
            repo = JobRepository(session)
            for job in await repo.queued_jobs(idle, self.worker.queues):
                if await repo.mark_locked(job.id, self.worker.id):
                    logger.debug(f"Marked job {job.id} as locked", extra={"worker_id": self.worker.id})
                    claimed.append(job.id)
                else:
                    logger.debug(
                        f"Job {job.id} has been claimed by another poller, skipping",
                        extra={"worker_id": self.worker.id},
                    )

        if not self._running:
            raise _PollerStopped()

        return claimed

    def _record_global_lock_result(self, acquired: bool) -> bool:
        if acquired:
            self._global_lock_fails = 0
            self._max_global_lock_fails_reached = False
            return True

        self._global_lock_fails += 1
        self.worker.metrics.record_global_lock_failure(self.worker.id)
        max_fails = self.worker.settings.max_global_lock_fails

        if not self._max_global_lock_fails_reached:
            logger.warning(
                "Could not obtain global lock, retrying with next poll.",
                extra={"worker_id": self.worker.id, "fails": self._global_lock_fails},
            )

        if self._global_lock_fails > max_fails and not self._max_global_lock_fails_reached:
            self._max_global_lock_fails_reached = True
            logger.warning(
                "Could not obtain global lock, retrying with next poll. This will be the last "
                "such message for this worker until the issue is resolved.",
                extra={"worker_id": self.worker.id},
            )
            message = (
                f"Worker reached maximum number of consecutive times ({max_fails}) where the "
                f"global lock could not be acquired within the specified timeout "
                f"({self.lock_timeout}s). A worker that obtained this lock may have crashed "
                "without ending its database connection properly. This message is issued only "
                "once per worker until the lock has been obtained again."
            )
            self.worker.settings.report_exception(GlobalLockError(message))

        return False

    async def clean_stuck_jobs(self) -> None:
        """
        Recover jobs claimed by dead processes on this host.

        Locked jobs are reset to waiting; started jobs are marked failed, as a
        partially executed job cannot be resumed safely.
        """
        async with self._global_lock.hold(MAX_LOCK_TIMEOUT) as acquired:
            if not acquired:
                logger.warning(
                    "Could not obtain global lock, skipping stuck job cleanup",
                    extra={"worker_id": self.worker.id},
                )
                return
            await self.worker.transaction(self._clean_stuck_jobs)

    async def _clean_stuck_jobs(self, session: AsyncSession) -> None:
        repo = JobRepository(session)
        alive: dict[int, bool] = {}

        for job in await repo.jobs_claimed_on_host(self.worker.hostname):
            owner = LockedBy.parse(job.locked_by)
            if owner is None:
                continue
            if owner.pid not in alive:
                alive[owner.pid] = process_alive(owner.pid)
            if alive[owner.pid]:
                continue

            if job.state == JobState.LOCKED:
                logger.warning(
                    f"Job #{job.id} has been locked but not yet started by PID {owner.pid} on host "
                    f"{owner.host}, but the process is not running anymore. The job has been reset.",
                    extra={"worker_id": self.worker.id, "job_id": job.id},
                )
                await repo.reset_job(job.id, force=True)
            else:
                message = (
                    f"Job has been started by PID {owner.pid} on host {owner.host} but the "
                    "process is not running anymore. This job has therefore been marked as "
                    "failed by the stuck job cleanup."
                )
                logger.warning(f"Job #{job.id}: {message}", extra={"worker_id": self.worker.id, "job_id": job.id})
                await repo.mark_failed(job.id, message)
