"""
Database module.
Contains database connection, models, locks and repository implementations.
"""

from jobmill.db.connection import Database, create_database
from jobmill.db.locks import GlobalLock
from jobmill.db.models import Base, Job
from jobmill.db.repository import JobRepository

__all__ = [
    "Database",
    "create_database",
    "GlobalLock",
    "JobRepository",
    "Job",
    "Base",
]
