"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, union, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import ACTIVE_STATES, DEFAULT_PRIORITY, FINAL_STATES, JobState
from jobmill.db.models import Job
from jobmill.exceptions import InvalidJobStateError, JobNotFoundError
from jobmill.types.job import LockedBy
from jobmill.utils import utcnow

logger = logging.getLogger(__name__)

# Execution order: lowest priority value first, then oldest first
EXECUTION_ORDER = (Job.priority.asc(), Job.created_at.asc(), Job.id.asc())


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission
    - Candidate selection with queue serialization
    - Conditional state transitions (claim, start, succeed, fail, reset)
    - Orphan and stale job lookups
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        payload: dict[str, Any],
        queue: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        perform_at: datetime | None = None,
        description: str | None = None,
    ) -> Job:
        """
        Insert a new job in state WAITING.

        Args:
            payload: Serialized job ({"job_type": ..., "data": ...}).
            queue: Queue name, None for the open queue.
            priority: Lower values run first.
            perform_at: Earliest execution time (naive UTC).
            description: Optional human readable label.

        Returns:
            The created Job.
        """
        job = Job(
            payload=payload,
            queue=queue,
            priority=priority,
            perform_at=perform_at if perform_at is not None else utcnow(),
            description=description,
            state=JobState.WAITING,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": job.id, "queue": queue, "job_type": payload.get("job_type")},
        )
        return job

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID, always reloading its columns from the database.

        Args:
            job_id: The job ID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_job(self, job_id: int) -> Job:
        """Like get_job, but raises JobNotFoundError for unknown IDs."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist.")
        return job

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    @staticmethod
    def _eligible(now: datetime) -> tuple[Any, ...]:
        return (
            Job.state == JobState.WAITING,
            or_(Job.perform_at <= now, Job.perform_at.is_(None)),
        )

    async def valid_queues(
        self,
        allowed: Sequence[str | None] = (),
        now: datetime | None = None,
    ) -> list[str | None]:
        """
        Queues from which a job may be claimed right now.

        A named queue is excluded while one of its jobs is locked or started;
        the open queue (None) is never excluded. The result is restricted to
        the allow-list unless it is empty.

        Args:
            allowed: Allowed queue names; None stands for the open queue.
            now: Reference time for perform_at.

        Returns:
            Queue names, the open queue first, then alphabetically.
        """
        now = now or utcnow()

        busy_queues = (
            select(Job.queue)
            .where(Job.queue.is_not(None), Job.state.in_(ACTIVE_STATES))
            .distinct()
        )
        stmt = (
            select(Job.queue)
            .where(
                *self._eligible(now),
                or_(Job.queue.is_(None), Job.queue.not_in(busy_queues)),
            )
            .distinct()
        )

        if allowed:
            named = [queue for queue in allowed if queue is not None]
            clauses = []
            if None in allowed:
                clauses.append(Job.queue.is_(None))
            if named:
                clauses.append(Job.queue.in_(named))
            stmt = stmt.where(or_(*clauses))

        result = await self._session.execute(stmt)
        queues = list(result.scalars().all())
        return sorted(queues, key=lambda queue: (queue is not None, queue or ""))

    async def queued_jobs(
        self,
        limit: int,
        allowed: Sequence[str | None] = (),
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Select up to `limit` claimable jobs in execution order.

        Every valid named queue contributes at most its first job, the open
        queue up to `limit` jobs. The union is ordered and capped again.

        Args:
            limit: Number of idle execution slots.
            allowed: Queue allow-list (see valid_queues).
            now: Reference time for perform_at.

        Returns:
            Jobs to claim, first to last.
        """
        if limit <= 0:
            return []

        now = now or utcnow()
        queues = await self.valid_queues(allowed, now)
        if not queues:
            return []

        # ORDER BY / LIMIT inside a UNION member need their own subquery
        parts = []
        for queue in queues:
            queue_clause = Job.queue.is_(None) if queue is None else Job.queue == queue
            per_queue = (
                select(Job.id)
                .where(*self._eligible(now), queue_clause)
                .order_by(*EXECUTION_ORDER)
                .limit(limit if queue is None else 1)
                .subquery()
            )
            parts.append(select(per_queue.c.id))

        candidates = (union(*parts) if len(parts) > 1 else parts[0]).subquery()
        stmt = (
            select(Job)
            .where(Job.id.in_(select(candidates.c.id)))
            .order_by(*EXECUTION_ORDER)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def mark_locked(self, job_id: int, locked_by: str) -> bool:
        """
        Claim a job: WAITING -> LOCKED.

        The update is conditional on the job still waiting, so a claim lost to
        another poller affects no row instead of raising.

        Args:
            job_id: The job ID.
            locked_by: Claim owner identity.

        Returns:
            True if this call claimed the job.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state == JobState.WAITING)
            .values(state=JobState.LOCKED, locked_by=locked_by, locked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def _transition(
        self,
        job_id: int,
        expected: Sequence[JobState],
        **values: Any,
    ) -> Job:
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state.in_(expected))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        job = await self.get_job(job_id)

        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist.")
        if result.rowcount == 0:
            raise InvalidJobStateError(
                job_id,
                tuple(state.value for state in expected),
                job.state.value if job.state else None,
            )
        return job

    async def mark_started(self, job_id: int) -> Job:
        """
        Transition job from LOCKED to STARTED.

        Raises:
            InvalidJobStateError: If the job is not locked.
        """
        job = await self._transition(
            job_id,
            (JobState.LOCKED,),
            state=JobState.STARTED,
            started_at=utcnow(),
        )
        logger.info("Started job execution", extra={"job_id": job_id})
        return job

    async def mark_succeeded(self, job_id: int) -> Job:
        """
        Mark job as successfully completed.

        Raises:
            InvalidJobStateError: If the job is not started.
        """
        job = await self._transition(
            job_id,
            (JobState.STARTED,),
            state=JobState.SUCCEEDED,
            succeeded_at=utcnow(),
        )
        logger.info("Job completed successfully", extra={"job_id": job_id})
        return job

    async def mark_failed(self, job_id: int, error: str) -> Job:
        """
        Mark job as failed and store the error.

        Raises:
            InvalidJobStateError: If the job is neither locked nor started.
        """
        job = await self._transition(
            job_id,
            ACTIVE_STATES,
            state=JobState.FAILED,
            failed_at=utcnow(),
            last_error=error,
        )
        logger.warning("Job failed", extra={"job_id": job_id})
        return job

    async def reset_job(self, job_id: int, force: bool = False) -> Job:
        """
        Reset a job to WAITING and clear everything set while processing it.

        Only final jobs may be reset unless force is given; forcing a job that
        is still being processed by a live worker leads to double execution.

        Args:
            job_id: The job ID.
            force: Skip the state check.

        Raises:
            InvalidJobStateError: If the job is not final and force is False.
        """
        expected = tuple(JobState) if force else FINAL_STATES
        job = await self._transition(
            job_id,
            expected,
            state=JobState.WAITING,
            locked_by=None,
            locked_at=None,
            started_at=None,
            succeeded_at=None,
            failed_at=None,
            last_error=None,
        )
        logger.info("Job reset", extra={"job_id": job_id, "force": force})
        return job

    # ------------------------------------------------------------------
    # Maintenance queries
    # ------------------------------------------------------------------

    async def jobs_claimed_on_host(self, hostname: str) -> list[Job]:
        """
        Locked or started jobs whose claim owner runs on the given host.

        Args:
            hostname: Host part of locked_by.

        Returns:
            Matching jobs ordered by ID.
        """
        stmt = (
            select(Job)
            .where(
                Job.state.in_(ACTIVE_STATES),
                Job.locked_by.startswith(f"{hostname}.", autoescape=True),
            )
            .order_by(Job.id)
        )
        result = await self._session.execute(stmt)
        jobs = []
        for job in result.scalars().all():
            owner = LockedBy.parse(job.locked_by)
            if owner is not None and owner.host == hostname:
                jobs.append(job)
        return jobs

    async def job_ids_in_state_since(
        self,
        state: JobState,
        before: datetime,
    ) -> list[int]:
        """
        IDs of jobs locked (or started) before the given time.

        Args:
            state: JobState.LOCKED or JobState.STARTED.
            before: Cutoff for locked_at (or started_at).
        """
        column = Job.locked_at if state == JobState.LOCKED else Job.started_at
        stmt = select(Job.id).where(Job.state == state, column < before).order_by(Job.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_succeeded_before(self, cutoff: datetime) -> int:
        """
        Delete succeeded jobs last updated at or before cutoff.

        Returns:
            Number of deleted jobs.
        """
        stmt = (
            delete(Job)
            .where(Job.state == JobState.SUCCEEDED, Job.updated_at <= cutoff)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Deleted {count} succeeded jobs")

        return count

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job statistics by state.

        Returns:
            Dictionary of state -> count, including zero counts.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)
        stats = {state.value: 0 for state in JobState}
        for state, count in result.all():
            stats[JobState(state).value] = count
        return stats
