"""
Supervisor module.
Keeps a set of detached worker processes alive.
"""

from jobmill.daemon.main import Daemon, WorkerDefinition

__all__ = [
    "Daemon",
    "WorkerDefinition",
]
