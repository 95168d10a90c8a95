"""
Type definitions for the job queue.
"""

from jobmill.types.job import (
    JobContext,
    JobPayload,
    LockedBy,
)

__all__ = [
    "JobPayload",
    "JobContext",
    "LockedBy",
]
