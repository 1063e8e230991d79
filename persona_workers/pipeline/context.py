"""
Per-job execution context: cooperative cancellation and bounded waits.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import JobCancelled, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Checked at every suspension point. An in-flight external call is never
    interrupted; the job stops at the next check.

    `probe` is an optional callable consulted when the local flag is unset,
    e.g. a lookup of the cancel flag in the queue metadata.
    """

    def __init__(self, probe: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self._probe = probe

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._probe is not None and self._probe():
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self, job_id: str = ""):
        if self.cancelled:
            logger.info(f"[{job_id}] cancellation observed, stopping")
            raise JobCancelled("cancelled")


async def bounded_call(
    awaitable: Awaitable[T],
    timeout: float,
    what: str = "external call",
) -> T:
    """Await with a timeout. A timeout is reported as a transient service error."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientServiceError(f"{what} timed out after {timeout:g}s") from e


class CostLedger:
    """Running total of external-call cost for one job, in cents."""

    def __init__(self):
        self.entries: list[tuple[str, int]] = []

    def add(self, what: str, cents: int):
        if cents:
            self.entries.append((what, cents))

    @property
    def total(self) -> int:
        return sum(c for _, c in self.entries)
