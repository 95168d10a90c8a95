"""
Application constants.
Centralized location for all constant values used across the application.
"""

import signal
from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> LOCKED (claimed by a poller)
    - LOCKED -> STARTED (performer picked it up)
    - STARTED -> SUCCEEDED
    - LOCKED | STARTED -> FAILED
    - SUCCEEDED | FAILED -> WAITING (explicit reset)
    """

    WAITING = "waiting"
    LOCKED = "locked"
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkerState(StrEnum):
    """Worker lifecycle states."""

    INITIALIZED = "initialized"
    RUNNING = "running"
    SHUTDOWN = "shutdown"


# Jobs in these states block their (named) queue
ACTIVE_STATES = (JobState.LOCKED, JobState.STARTED)
FINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)

# Global lock acquisition bounds, in seconds
MIN_LOCK_TIMEOUT = 0.1
MAX_LOCK_TIMEOUT = 1.0

# Signals
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)
LOG_REOPEN_SIGNAL = signal.SIGHUP
SOFT_RESTART_SIGNAL = signal.SIGUSR1
KILL_SIGNALS = (signal.SIGKILL,)

# Supervisor exit codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_UNEXPECTED_STATUS = 2
EXIT_ERROR = 99

# Default job values
DEFAULT_PRIORITY = 0
DEFAULT_CLEANUP_MAX_AGE_DAYS = 14

# Metrics names
METRIC_JOBS_CLAIMED = "jobmill_jobs_claimed_total"
METRIC_JOBS_COMPLETED = "jobmill_jobs_completed_total"
METRIC_JOB_DURATION = "jobmill_job_duration_seconds"
METRIC_GLOBAL_LOCK_FAILURES = "jobmill_global_lock_failures_total"
METRIC_POOL_IDLE = "jobmill_pool_idle_slots"

# Trace span names
SPAN_POLL_CYCLE = "poll_cycle"
SPAN_PERFORM_JOB = "perform_job"
