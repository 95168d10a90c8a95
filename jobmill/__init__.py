"""
jobmill - Database-backed Job Queue

Producers insert jobs into a shared relational database; worker processes
poll, claim and execute them with at-most-once claims enforced through a
cluster-wide lock and conditional updates. A small supervisor keeps a fleet
of worker processes alive.
"""

__version__ = "1.0.0"

from jobmill.config import Settings, get_settings
from jobmill.constants import JobState, WorkerState
from jobmill.db.connection import Database, create_database
from jobmill.enqueuer import enqueue
from jobmill.types.job import JobContext
from jobmill.worker.handlers import JobRegistry, register_job, registry
from jobmill.worker.main import Worker
from jobmill.worker.performer import current_performer

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "JobState",
    "WorkerState",
    "Database",
    "create_database",
    "enqueue",
    "JobContext",
    "JobRegistry",
    "register_job",
    "registry",
    "Worker",
    "current_performer",
]
