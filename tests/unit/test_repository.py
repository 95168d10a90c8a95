"""
Unit tests for the job repository.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import JobState
from jobmill.db.models import Job
from jobmill.db.repository import JobRepository
from jobmill.exceptions import InvalidJobStateError, JobNotFoundError
from jobmill.utils import utcnow

PAYLOAD = {"job_type": "record", "data": {}}
OWNER = "host-a.1234.abcdef"


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    async def test_create_job_defaults(self, repo: JobRepository, db_session: AsyncSession):
        """New jobs wait in the open queue and are due immediately."""
        before = utcnow()
        job = await repo.create_job(payload=PAYLOAD, description="first")
        await db_session.commit()

        assert job.id is not None
        assert job.state == JobState.WAITING
        assert job.queue is None
        assert job.priority == 0
        assert job.perform_at >= before
        assert job.description == "first"
        assert job.job_type == "record"
        assert job.locked_by is None

    async def test_mark_locked_only_once(self, repo: JobRepository, db_session: AsyncSession):
        """A second claim of the same job affects no row."""
        job = await repo.create_job(payload=PAYLOAD)
        await db_session.commit()

        assert await repo.mark_locked(job.id, OWNER) is True
        assert await repo.mark_locked(job.id, "host-b.99.ffffff") is False
        await db_session.commit()

        locked = await repo.require_job(job.id)
        assert locked.state == JobState.LOCKED
        assert locked.locked_by == OWNER
        assert locked.locked_at is not None

    async def test_full_lifecycle(self, repo: JobRepository, db_session: AsyncSession):
        """Test waiting -> locked -> started -> succeeded."""
        job = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(job.id, OWNER)

        started = await repo.mark_started(job.id)
        assert started.state == JobState.STARTED
        assert started.started_at is not None

        succeeded = await repo.mark_succeeded(job.id)
        await db_session.commit()

        assert succeeded.state == JobState.SUCCEEDED
        assert succeeded.succeeded_at is not None
        assert succeeded.is_final

    async def test_transition_from_wrong_state(self, repo: JobRepository, db_session: AsyncSession):
        """Transitions check the current state."""
        job = await repo.create_job(payload=PAYLOAD)
        await db_session.commit()

        with pytest.raises(InvalidJobStateError) as exc_info:
            await repo.mark_started(job.id)
        assert exc_info.value.actual == "waiting"
        assert "is not in state ['locked'] but in state 'waiting'" in str(exc_info.value)

        await repo.mark_locked(job.id, OWNER)
        with pytest.raises(InvalidJobStateError):
            await repo.mark_succeeded(job.id)

        assert (await repo.require_job(job.id)).state == JobState.LOCKED

    async def test_mark_failed_stores_error(self, repo: JobRepository, db_session: AsyncSession):
        """Locked jobs may fail without being started."""
        job = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(job.id, OWNER)

        failed = await repo.mark_failed(job.id, "Traceback: boom")
        await db_session.commit()

        assert failed.state == JobState.FAILED
        assert failed.failed_at is not None
        assert failed.last_error == "Traceback: boom"

        with pytest.raises(InvalidJobStateError):
            await repo.mark_failed(job.id, "again")

    async def test_unknown_job(self, repo: JobRepository):
        """Transitions of missing jobs raise JobNotFoundError."""
        assert await repo.get_job(424242) is None
        with pytest.raises(JobNotFoundError):
            await repo.mark_started(424242)
        with pytest.raises(JobNotFoundError):
            await repo.require_job(424242)

    async def test_reset_final_job(self, repo: JobRepository, db_session: AsyncSession):
        """Reset clears all claim and result fields."""
        job = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(job.id, OWNER)
        await repo.mark_started(job.id)
        await repo.mark_failed(job.id, "boom")

        reset = await repo.reset_job(job.id)
        await db_session.commit()

        assert reset.state == JobState.WAITING
        assert reset.locked_by is None
        assert reset.locked_at is None
        assert reset.started_at is None
        assert reset.failed_at is None
        assert reset.succeeded_at is None
        assert reset.last_error is None

    async def test_reset_active_job_requires_force(self, repo: JobRepository, db_session: AsyncSession):
        """Non-final jobs are only reset with force."""
        job = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(job.id, OWNER)
        await db_session.commit()

        with pytest.raises(InvalidJobStateError):
            await repo.reset_job(job.id)

        reset = await repo.reset_job(job.id, force=True)
        assert reset.state == JobState.WAITING
        assert reset.locked_by is None


class TestCandidateSelection:
    """Tests for valid_queues and queued_jobs."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_priority_then_creation_order(self, repo: JobRepository, db_session: AsyncSession):
        """Lower priority values first, ties broken by arrival."""
        ids = {}
        for label, priority in [("p4", 4), ("p3a", 3), ("p3b", 3), ("p2", 2), ("p1", 1), ("p0", 0)]:
            ids[label] = (await repo.create_job(payload=PAYLOAD, priority=priority)).id
        await db_session.commit()

        jobs = await repo.queued_jobs(limit=10)
        assert [job.id for job in jobs] == [ids[label] for label in ["p0", "p1", "p2", "p3a", "p3b", "p4"]]

        limited = await repo.queued_jobs(limit=2)
        assert [job.id for job in limited] == [ids["p0"], ids["p1"]]

    async def test_one_job_per_named_queue(self, repo: JobRepository, db_session: AsyncSession):
        """Named queues contribute at most one job, the open queue up to the limit."""
        q1_first = await repo.create_job(payload=PAYLOAD, queue="q1")
        await repo.create_job(payload=PAYLOAD, queue="q1")
        q2_first = await repo.create_job(payload=PAYLOAD, queue="q2")
        await repo.create_job(payload=PAYLOAD, queue="q2")
        open_jobs = [await repo.create_job(payload=PAYLOAD) for _ in range(3)]
        await db_session.commit()

        assert await repo.valid_queues() == [None, "q1", "q2"]

        jobs = await repo.queued_jobs(limit=10)
        assert sorted(job.id for job in jobs) == sorted(
            [q1_first.id, q2_first.id, *(job.id for job in open_jobs)]
        )

    async def test_busy_queue_is_excluded(self, repo: JobRepository, db_session: AsyncSession):
        """A named queue with a locked or started job is not valid."""
        first = await repo.create_job(payload=PAYLOAD, queue="q1")
        second = await repo.create_job(payload=PAYLOAD, queue="q1")
        await repo.mark_locked(first.id, OWNER)
        await db_session.commit()

        assert await repo.valid_queues() == []
        assert await repo.queued_jobs(limit=5) == []

        await repo.mark_started(first.id)
        await repo.mark_succeeded(first.id)
        await db_session.commit()

        assert [job.id for job in await repo.queued_jobs(limit=5)] == [second.id]

    async def test_open_queue_is_never_blocked(self, repo: JobRepository, db_session: AsyncSession):
        """Running open-queue jobs do not block other open-queue jobs."""
        running = await repo.create_job(payload=PAYLOAD)
        waiting = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(running.id, OWNER)
        await db_session.commit()

        assert [job.id for job in await repo.queued_jobs(limit=5)] == [waiting.id]

    async def test_allow_list(self, repo: JobRepository, db_session: AsyncSession):
        """The allow-list restricts queues; None stands for the open queue."""
        open_job = await repo.create_job(payload=PAYLOAD)
        q1_job = await repo.create_job(payload=PAYLOAD, queue="q1")
        q2_job = await repo.create_job(payload=PAYLOAD, queue="q2")
        await db_session.commit()

        assert [job.id for job in await repo.queued_jobs(10, [None])] == [open_job.id]
        assert [job.id for job in await repo.queued_jobs(10, ["q2"])] == [q2_job.id]
        assert sorted(job.id for job in await repo.queued_jobs(10, [None, "q1"])) == sorted(
            [open_job.id, q1_job.id]
        )
        assert await repo.queued_jobs(10, ["unknown"]) == []

    async def test_future_jobs_are_not_due(self, repo: JobRepository, db_session: AsyncSession):
        """Jobs are eligible once perform_at has passed."""
        now = utcnow()
        later = await repo.create_job(payload=PAYLOAD, perform_at=now + timedelta(minutes=5))
        await db_session.commit()

        assert await repo.queued_jobs(limit=5, now=now) == []
        due = await repo.queued_jobs(limit=5, now=now + timedelta(minutes=6))
        assert [job.id for job in due] == [later.id]

    async def test_zero_limit(self, repo: JobRepository, db_session: AsyncSession):
        await repo.create_job(payload=PAYLOAD)
        await db_session.commit()

        assert await repo.queued_jobs(limit=0) == []


class TestMaintenanceQueries:
    """Tests for orphan, stale and retention queries."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_jobs_claimed_on_host(self, repo: JobRepository, db_session: AsyncSession):
        """Host matching is exact even for hostnames containing dots."""
        mine = await repo.create_job(payload=PAYLOAD)
        other_host = await repo.create_job(payload=PAYLOAD)
        dotted_host = await repo.create_job(payload=PAYLOAD)
        finished = await repo.create_job(payload=PAYLOAD)

        await repo.mark_locked(mine.id, "web.local.10.aaaaaa")
        await repo.mark_locked(other_host.id, "db.local.10.bbbbbb")
        await repo.mark_locked(dotted_host.id, "web.local.eu.10.cccccc")
        await repo.mark_locked(finished.id, "web.local.11.dddddd")
        await repo.mark_failed(finished.id, "done")
        await db_session.commit()

        jobs = await repo.jobs_claimed_on_host("web.local")
        assert [job.id for job in jobs] == [mine.id]

    async def test_job_ids_in_state_since(self, repo: JobRepository, db_session: AsyncSession):
        locked = await repo.create_job(payload=PAYLOAD)
        started = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(locked.id, OWNER)
        await repo.mark_locked(started.id, OWNER)
        await repo.mark_started(started.id)
        await db_session.commit()

        future = utcnow() + timedelta(seconds=1)
        past = utcnow() - timedelta(hours=1)

        assert await repo.job_ids_in_state_since(JobState.LOCKED, future) == [locked.id]
        assert await repo.job_ids_in_state_since(JobState.STARTED, future) == [started.id]
        assert await repo.job_ids_in_state_since(JobState.LOCKED, past) == []

    async def test_delete_succeeded_before(self, repo: JobRepository, db_session: AsyncSession):
        """Only succeeded jobs older than the cutoff are deleted."""
        old = await repo.create_job(payload=PAYLOAD)
        recent = await repo.create_job(payload=PAYLOAD)
        old_failure = await repo.create_job(payload=PAYLOAD)
        for job in (old, recent):
            await repo.mark_locked(job.id, OWNER)
            await repo.mark_started(job.id)
            await repo.mark_succeeded(job.id)
        await repo.mark_locked(old_failure.id, OWNER)
        await repo.mark_failed(old_failure.id, "boom")

        month_ago = utcnow() - timedelta(days=30)
        await db_session.execute(
            update(Job).where(Job.id.in_([old.id, old_failure.id])).values(updated_at=month_ago)
        )
        await db_session.commit()

        deleted = await repo.delete_succeeded_before(utcnow() - timedelta(days=14))
        await db_session.commit()

        assert deleted == 1
        assert await repo.get_job(old.id) is None
        assert await repo.get_job(recent.id) is not None
        assert await repo.get_job(old_failure.id) is not None

    async def test_get_job_stats(self, repo: JobRepository, db_session: AsyncSession):
        await repo.create_job(payload=PAYLOAD)
        locked = await repo.create_job(payload=PAYLOAD)
        await repo.mark_locked(locked.id, OWNER)
        await db_session.commit()

        stats = await repo.get_job_stats()
        assert stats == {"waiting": 1, "locked": 1, "started": 0, "succeeded": 0, "failed": 0}
