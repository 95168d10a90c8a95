"""
Small helpers shared by the worker and the supervisor.
"""

import os
from datetime import UTC, datetime
from pathlib import Path


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in every timestamp column."""
    return datetime.now(UTC).replace(tzinfo=None)


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def shutdown_file_for(pid: int, pid_dir: str | Path) -> Path:
    """Marker left behind by a worker that exited on purpose and wants a replacement."""
    return Path(pid_dir) / f"jobmill.{pid}.shutdown"
