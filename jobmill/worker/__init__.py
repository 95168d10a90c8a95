"""
Worker module.
Contains the worker, its poller and execution pool, the performer and the job registry.
"""

from jobmill.worker.handlers import JobRegistry, JobType, register_job, registry
from jobmill.worker.main import Worker
from jobmill.worker.performer import Performer, current_performer
from jobmill.worker.poller import Poller
from jobmill.worker.pool import Pool

__all__ = [
    "Worker",
    "Poller",
    "Pool",
    "Performer",
    "current_performer",
    "JobRegistry",
    "JobType",
    "register_job",
    "registry",
]
