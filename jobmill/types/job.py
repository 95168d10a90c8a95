"""
Job-related type definitions for internal use.
"""

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from jobmill.worker.main import Worker

T = TypeVar("T")

# "<hostname>.<pid>.<token>"; hostnames may contain dots themselves
LOCKED_BY_PATTERN = re.compile(r"^(?P<host>.*)\.(?P<pid>\d+)\.(?P<token>[^.]+)$")


class JobPayload(BaseModel):
    """
    Job payload structure.
    A registered type tag plus the keyword arguments for its handler.
    """

    job_type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class LockedBy:
    """Claim owner identity stored in jobs.locked_by."""

    host: str
    pid: int
    token: str

    def __str__(self) -> str:
        return f"{self.host}.{self.pid}.{self.token}"

    @classmethod
    def parse(cls, value: str | None) -> "LockedBy | None":
        """Split a locked_by value; returns None for foreign or malformed values."""
        if not value:
            return None
        match = LOCKED_BY_PATTERN.match(value)
        if match is None:
            return None
        return cls(host=match["host"], pid=int(match["pid"]), token=match["token"])


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: int
    job_type: str
    data: dict[str, Any]
    queue: str | None
    priority: int
    description: str | None
    locked_by: str | None
    worker: "Worker"
    # Set when the body runs inside a transaction
    session: AsyncSession | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def in_transaction(self) -> bool:
        return self.session is not None

    async def with_session(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run fn against the job's transaction, or a new one if the job type
        opted out of running in a transaction.
        """
        if self.session is not None:
            return await fn(self.session)
        return await self.worker.transaction(fn)
