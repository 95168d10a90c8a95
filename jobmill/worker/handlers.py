"""
Job type registry and built-in jobs.

Payloads never contain executable instructions: a stored payload is a
registered type tag plus the keyword data for its handler, and decoding an
unregistered tag fails the job.

Job handlers should be idempotent where possible - a job whose worker died
mid-execution is marked failed and may be reset and run again by an operator.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import DEFAULT_CLEANUP_MAX_AGE_DAYS, JobState
from jobmill.db.repository import JobRepository
from jobmill.exceptions import StaleJobsDetectedError, UnknownJobTypeError
from jobmill.types.job import JobContext, JobPayload
from jobmill.utils import utcnow

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[Any]]


@dataclass(frozen=True)
class JobType:
    """A registered job type."""

    name: str
    handler: JobHandler
    # Run the handler inside a database transaction (subject to perform_jobs_in_tx)
    perform_in_tx: bool = True


class JobRegistry:
    """
    Maps job type tags to handlers.

    Example:
        registry = JobRegistry()

        @registry.register("send_email")
        async def send_email(context: JobContext) -> None:
            ...
    """

    def __init__(self) -> None:
        self._job_types: dict[str, JobType] = {}

    def register(
        self,
        job_type: str,
        perform_in_tx: bool = True,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The type tag stored in payloads.
            perform_in_tx: Set to False for handlers that must not run inside
                a transaction (e.g. long running jobs or jobs managing their
                own transactions).

        Returns:
            Decorator function.
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler, perform_in_tx=perform_in_tx)
            return handler

        return decorator

    def add(self, job_type: str, handler: JobHandler, perform_in_tx: bool = True) -> JobType:
        """Register a handler without the decorator syntax."""
        entry = JobType(name=job_type, handler=handler, perform_in_tx=perform_in_tx)
        self._job_types[job_type] = entry
        logger.debug(f"Registered handler for job type: {job_type}")
        return entry

    def get(self, job_type: str) -> JobType:
        """
        Get the registration for a job type.

        Raises:
            UnknownJobTypeError: If the type is not registered.
        """
        try:
            return self._job_types[job_type]
        except KeyError:
            raise UnknownJobTypeError(f"No handler registered for job type: {job_type}") from None

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._job_types

    def list_job_types(self) -> list[str]:
        """List all registered job types."""
        return sorted(self._job_types)

    def encode(self, job_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Build the stored payload for a registered job type.

        Raises:
            UnknownJobTypeError: If the type is not registered.
        """
        self.get(job_type)
        return JobPayload(job_type=job_type, data=data or {}).model_dump(exclude_none=True)

    def decode(self, payload: Any) -> tuple[JobType, JobPayload]:
        """
        Validate a stored payload and look up its handler.

        Raises:
            pydantic.ValidationError: If the payload is malformed.
            UnknownJobTypeError: If the type is not registered.
        """
        parsed = JobPayload.model_validate(payload)
        return self.get(parsed.job_type), parsed


# Default registry used by workers and the enqueuer
registry = JobRegistry()


def register_job(job_type: str, perform_in_tx: bool = True) -> Callable[[JobHandler], JobHandler]:
    """Register a handler in the default registry."""
    return registry.register(job_type, perform_in_tx=perform_in_tx)


# ============================================================================
# Built-in jobs
# ============================================================================


@register_job("jobmill.detect_stale_jobs")
async def detect_stale_jobs(context: JobContext) -> None:
    """
    Audit job reporting jobs that are stuck.

    Fails (and thereby reaches the exception callback) when jobs have been
    locked but not started, or started but not finished, for longer than the
    worker's stale detection thresholds. A threshold of 0 disables its check.
    """
    settings = context.worker.settings
    locked_threshold = settings.stale_detection_locked_to_started_threshold
    run_time_threshold = settings.stale_detection_run_time_threshold
    now = utcnow()

    async def find(session: AsyncSession) -> tuple[list[int], list[int]]:
        repo = JobRepository(session)
        locked: list[int] = []
        started: list[int] = []
        if locked_threshold > 0:
            locked = await repo.job_ids_in_state_since(
                JobState.LOCKED, now - timedelta(seconds=locked_threshold)
            )
        if run_time_threshold > 0:
            started = await repo.job_ids_in_state_since(
                JobState.STARTED, now - timedelta(seconds=run_time_threshold)
            )
        return locked, started

    locked, started = await context.with_session(find)

    messages = []
    if locked:
        messages.append(
            f"Detected {len(locked)} jobs that were locked more than "
            f"{locked_threshold}s ago and might be stale: {locked}."
        )
    if started:
        messages.append(
            f"Detected {len(started)} jobs that are running for longer than "
            f"{run_time_threshold}s: {started}."
        )

    if messages:
        raise StaleJobsDetectedError(" ".join(messages))


@register_job("jobmill.cleanup_succeeded_jobs")
async def cleanup_succeeded_jobs(context: JobContext) -> int:
    """
    Retention job deleting succeeded jobs.

    Data:
    - max_age: Age in days after which succeeded jobs are deleted (default 14)
    """
    max_age = int(context.data.get("max_age", DEFAULT_CLEANUP_MAX_AGE_DAYS))
    cutoff = utcnow() - timedelta(days=max_age)

    async def cleanup(session: AsyncSession) -> int:
        return await JobRepository(session).delete_succeeded_before(cutoff)

    return await context.with_session(cleanup)
