"""
In-process concurrency guard used when Redis is unreachable.

Without the queue, jobs run as FastAPI background tasks; this caps how
many run at once so the external services are not flooded. State is lost
on restart.
"""

import os
import threading

MAX_CONCURRENT_JOBS = int(os.environ.get("FALLBACK_MAX_CONCURRENT_JOBS", "2"))

_lock = threading.Lock()
_active_jobs = 0


def acquire_job_slot() -> bool:
    """Claim a slot. Returns False when at capacity."""
    global _active_jobs
    with _lock:
        if _active_jobs >= MAX_CONCURRENT_JOBS:
            return False
        _active_jobs += 1
        return True


def release_job_slot():
    global _active_jobs
    with _lock:
        _active_jobs = max(0, _active_jobs - 1)


def get_active_jobs() -> int:
    with _lock:
        return _active_jobs
