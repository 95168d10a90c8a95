"""
Exception hierarchy.

Coordination failures (lock timeouts, lost claim races) are never raised to
callers; everything here is either a usage error raised synchronously, a job
failure recorded on the job, or an alert handed to the exception callback.
"""


class JobmillError(Exception):
    """Base class for all errors raised by jobmill."""


class ConfigurationError(JobmillError):
    """Invalid configuration value or combination."""


class InvalidJobStateError(JobmillError):
    """A job transition was attempted from an unexpected state."""

    def __init__(self, job_id: int, expected: tuple[str, ...], actual: str | None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} is not in state {list(expected)!r} but in state {actual!r}."
        )


class JobNotFoundError(JobmillError):
    """The referenced job record does not exist."""


class UnknownJobTypeError(JobmillError):
    """A payload references a job type that is not registered."""


class PerformerError(JobmillError):
    """A performer was invoked more than once."""


class PoolSaturatedError(JobmillError):
    """All execution slots are busy."""


class PoolShutdownError(JobmillError):
    """The pool no longer accepts work."""


class InvalidWorkerStateError(JobmillError):
    """A worker lifecycle method was called in the wrong state."""


class GlobalLockError(JobmillError):
    """The cluster-wide lock could not be obtained too many times in a row."""


class StaleJobsDetectedError(JobmillError):
    """Jobs have been locked or running for longer than the configured thresholds."""


class DaemonError(JobmillError):
    """Supervisor failure affecting the managed worker processes."""


class LockNotAvailableError(JobmillError):
    """Another supervisor command holds the shell lock."""
