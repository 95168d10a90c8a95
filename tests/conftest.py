"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.config import Settings
from jobmill.constants import JobState, WorkerState
from jobmill.db.connection import Database, create_database
from jobmill.db.models import Job
from jobmill.db.repository import JobRepository
from jobmill.enqueuer import enqueue
from jobmill.observability.metrics import MetricsCollector
from jobmill.types.job import JobContext
from jobmill.worker.handlers import JobRegistry
from jobmill.worker.main import Worker
from tests.helpers import wait_until

# Set to a PostgreSQL URL to run against a real server instead of SQLite
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path}/jobs.db"


@pytest.fixture
def test_settings(database_url: str, tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        worker_polling_interval_seconds=0.1,
        worker_auto_terminate=False,
        pid_dir=str(tmp_path / "pids"),
        daemon_lockfile=str(tmp_path / "jobmill.lock"),
        daemon_stop_poll_interval_seconds=0.05,
        daemon_stop_timeout_seconds=15.0,
        log_level="INFO",
        log_format="console",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """Database with a fresh jobs table."""
    db = create_database(test_settings)
    await db.create_all()
    async with db.session() as session:
        await session.execute(delete(Job))

    yield db

    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with database.session_factory() as session:
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector on a private registry so tests do not share counters."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def job_log() -> list[Any]:
    """Labels recorded by the test jobs, in execution order."""
    return []


@pytest.fixture
def events() -> defaultdict[str, asyncio.Event]:
    """Named events released by tests to let blocking jobs finish."""
    return defaultdict(asyncio.Event)


@pytest.fixture
def registry(job_log: list[Any], events: defaultdict[str, asyncio.Event]) -> JobRegistry:
    """Registry with the job types used throughout the tests."""
    registry = JobRegistry()

    @registry.register("record")
    async def record(context: JobContext) -> None:
        job_log.append(context.data.get("label", context.job_id))

    @registry.register("sleep")
    async def sleep(context: JobContext) -> None:
        await asyncio.sleep(context.data.get("seconds", 0.05))
        job_log.append(context.data.get("label", context.job_id))

    @registry.register("block")
    async def block(context: JobContext) -> None:
        await events[context.data["event"]].wait()
        job_log.append(context.data.get("label", context.data["event"]))

    @registry.register("fail")
    async def fail(context: JobContext) -> None:
        raise RuntimeError(context.data.get("message", "boom"))

    @registry.register("tx_probe")
    async def tx_probe(context: JobContext) -> None:
        job_log.append(context.in_transaction)

    @registry.register("no_tx_probe", perform_in_tx=False)
    async def no_tx_probe(context: JobContext) -> None:
        job_log.append(context.in_transaction)

    @registry.register("enqueue_then_fail")
    async def enqueue_then_fail(context: JobContext) -> None:
        await enqueue(context.session, "record", {"label": "child"}, registry=registry)
        raise RuntimeError("rolled back")

    return registry


class JobHelper:
    """Job setup and inspection through committed sessions."""

    def __init__(self, database: Database, registry: JobRegistry):
        self.database = database
        self.registry = registry

    async def add(self, job_type: str = "record", data: dict[str, Any] | None = None, **kwargs: Any) -> int:
        async with self.database.session() as session:
            job = await enqueue(session, job_type, data, registry=self.registry, **kwargs)
            return job.id

    async def get(self, job_id: int) -> Job:
        async with self.database.session() as session:
            return await JobRepository(session).require_job(job_id)

    async def state(self, job_id: int) -> JobState:
        return (await self.get(job_id)).state

    async def lock(self, job_id: int, locked_by: str) -> None:
        async with self.database.session() as session:
            assert await JobRepository(session).mark_locked(job_id, locked_by)

    async def start(self, job_id: int, locked_by: str) -> None:
        await self.lock(job_id, locked_by)
        async with self.database.session() as session:
            await JobRepository(session).mark_started(job_id)

    async def wait_for_state(self, job_id: int, *states: JobState, timeout: float = 10.0) -> Job:
        async def reached() -> bool:
            return await self.state(job_id) in states

        await wait_until(reached, timeout=timeout)
        return await self.get(job_id)


@pytest.fixture
def jobs(database: Database, registry: JobRegistry) -> JobHelper:
    return JobHelper(database, registry)


@pytest_asyncio.fixture
async def make_worker(
    test_settings: Settings,
    database: Database,
    registry: JobRegistry,
    metrics: MetricsCollector,
    events: defaultdict[str, asyncio.Event],
) -> AsyncGenerator[Callable[..., Worker]]:
    """Factory for workers sharing the test database; running workers are shut down afterwards."""
    created: list[Worker] = []

    def factory(**overrides: Any) -> Worker:
        settings = test_settings.model_copy(update=overrides)
        worker = Worker(settings, database, registry=registry, metrics=metrics)
        created.append(worker)
        return worker

    yield factory

    for event in events.values():
        event.set()
    for worker in created:
        if worker.state == WorkerState.RUNNING:
            await asyncio.wait_for(worker.shutdown(), timeout=10)
