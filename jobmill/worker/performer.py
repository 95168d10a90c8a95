"""
Performer: runs one claimed job to completion.
"""

import logging
import time
import traceback
from contextvars import ContextVar
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import SPAN_PERFORM_JOB, JobState
from jobmill.db.models import Job
from jobmill.db.repository import JobRepository
from jobmill.exceptions import JobmillError, PerformerError
from jobmill.observability.logging import bind_context, unbind_context
from jobmill.observability.tracing import get_tracer
from jobmill.types.job import JobContext

if TYPE_CHECKING:
    from jobmill.worker.main import Worker

logger = logging.getLogger(__name__)

_current_performer: ContextVar["Performer | None"] = ContextVar(
    "jobmill_current_performer", default=None
)


def current_performer() -> "Performer":
    """
    The performer running the calling job.

    Raises:
        RuntimeError: If called outside of a job.
    """
    performer = _current_performer.get()
    if performer is None:
        raise RuntimeError("No job is being performed in the current context.")
    return performer


class Performer:
    """
    Executes exactly one job record.

    Lifecycle:
    1. Mark the job started (own transaction)
    2. Decode the payload through the worker's registry
    3. Run the handler, inside a transaction unless the job type opted out
    4. Mark the job succeeded (own transaction)

    Any exception from steps 1-4 marks the job failed with the formatted
    traceback and is re-raised to the caller.
    """

    def __init__(self, job_id: int, worker: "Worker"):
        self.job_id = job_id
        self.worker = worker
        self.job: Job | None = None
        self.context: JobContext | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def perform(self) -> None:
        """
        Run the job.

        Raises:
            PerformerError: If this performer has already run.
        """
        if self._started:
            raise PerformerError(f"Performer for job {self.job_id} can only run once.")
        self._started = True

        token = _current_performer.set(self)
        bind_context(job_id=self.job_id)
        start_time = time.monotonic()
        status = JobState.FAILED
        try:
            with get_tracer().start_as_current_span(SPAN_PERFORM_JOB) as span:
                span.set_attribute("job_id", self.job_id)
                span.set_attribute("worker_id", self.worker.id)
                try:
                    await self._perform()
                    status = JobState.SUCCEEDED
                except Exception as exc:
                    await self._mark_failed(exc)
                    raise
        finally:
            _current_performer.reset(token)
            unbind_context("job_id")
            self.worker.metrics.record_job_completed(
                status=status.value,
                duration_seconds=time.monotonic() - start_time,
            )

    async def _perform(self) -> None:
        self.job = await self.worker.transaction(
            lambda session: JobRepository(session).mark_started(self.job_id)
        )

        job_type, payload = self.worker.registry.decode(self.job.payload)
        context = JobContext(
            job_id=self.job_id,
            job_type=job_type.name,
            data=payload.data,
            queue=self.job.queue,
            priority=self.job.priority,
            description=self.job.description,
            locked_by=self.job.locked_by,
            worker=self.worker,
            metadata=payload.metadata or {},
        )
        self.context = context

        logger.info(
            "Performing job",
            extra={"job_id": self.job_id, "job_type": job_type.name, "queue": self.job.queue},
        )

        if job_type.perform_in_tx and self.worker.settings.perform_jobs_in_tx:

            async def body(session: AsyncSession) -> None:
                context.session = session
                try:
                    await job_type.handler(context)
                finally:
                    context.session = None

            await self.worker.transaction(body)
        else:
            await job_type.handler(context)

        await self.worker.transaction(
            lambda session: JobRepository(session).mark_succeeded(self.job_id)
        )

    async def _mark_failed(self, exc: Exception) -> None:
        error = "".join(traceback.format_exception(exc))
        logger.warning(
            f"Job raised {type(exc).__name__}: {exc}",
            extra={"job_id": self.job_id},
        )
        try:
            await self.worker.transaction(
                lambda session: JobRepository(session).mark_failed(self.job_id, error)
            )
        except JobmillError:
            # The caller still receives the original exception
            logger.exception("Could not mark job as failed", extra={"job_id": self.job_id})
