"""
SQLAlchemy database models.
Defines the Job table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobmill.constants import DEFAULT_PRIORITY, FINAL_STATES, JobState
from jobmill.utils import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - state only moves waiting -> locked -> started -> succeeded | failed,
      or back to waiting through an explicit reset
    - locked_by / locked_at are written when leaving waiting and cleared on reset
    - at most one job per named queue is locked or started at any time
    """

    __tablename__ = "jobs"

    # Primary key (BIGINT does not autoincrement on SQLite)
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Status and scheduling
    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.WAITING,
        index=True,
    )
    queue: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )
    perform_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Job payload: {"job_type": ..., "data": {...}}
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Claim ownership: "<hostname>.<pid>.<random token>"
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Execution timestamps
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    succeeded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        # Candidate selection: waiting jobs of a queue in execution order
        Index("ix_jobs_poll", "state", "queue", "priority", "created_at"),
    )

    @property
    def job_type(self) -> str | None:
        """Registered type tag of the payload."""
        return (self.payload or {}).get("job_type")

    @property
    def is_final(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.state in FINAL_STATES

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.job_type}, queue={self.queue}, "
            f"state={self.state}, priority={self.priority})"
        )
