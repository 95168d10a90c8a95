"""
Job submission for producers.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jobmill.constants import DEFAULT_PRIORITY
from jobmill.db.models import Job
from jobmill.db.repository import JobRepository
from jobmill.worker.handlers import JobRegistry
from jobmill.worker.handlers import registry as default_registry

logger = logging.getLogger(__name__)


async def enqueue(
    session: AsyncSession,
    job_type: str,
    data: dict[str, Any] | None = None,
    *,
    queue: str | None = None,
    priority: int = DEFAULT_PRIORITY,
    perform_at: datetime | None = None,
    description: str | None = None,
    registry: JobRegistry | None = None,
) -> Job:
    """
    Insert a waiting job into the producer's transaction.

    The job becomes visible to workers once the session commits.

    Args:
        session: The producer's session.
        job_type: Registered job type tag.
        data: Keyword data passed to the handler; must be JSON serializable.
        queue: Queue name. Jobs of a named queue run one at a time; None
            allows parallel execution.
        priority: Lower values run first.
        perform_at: Earliest execution time as naive UTC. Defaults to now.
        description: Optional human readable label.
        registry: Registry to validate the job type against.

    Returns:
        The created Job.

    Raises:
        UnknownJobTypeError: If job_type is not registered.
    """
    payload = (registry or default_registry).encode(job_type, data)
    return await JobRepository(session).create_job(
        payload=payload,
        queue=queue,
        priority=priority,
        perform_at=perform_at,
        description=description,
    )
