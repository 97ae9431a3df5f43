"""Background execution context for inference.

Architecture:
    event loop -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> predict()

A submission that cannot get a slot within the queue timeout is refused with
InferenceRejectedError. Errors raised by the submitted function itself pass
through unchanged, and results resume on the event loop that awaited them.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from scenecaption.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferenceRejectedError(RuntimeError):
    """Raised when no inference slot frees up within the queue timeout."""


class InferencePool:
    """Bounded thread pool that runs blocking predictions off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._queue_timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="scenecaption-inference",
        )
        self._stats_lock = threading.Lock()
        self._waiting = 0
        self._running = 0
        self._rejected = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run `func(*args)` on a worker thread once a slot is free.

        Raises:
            InferenceRejectedError: If no slot frees up within the queue timeout.
        """
        await self._acquire_slot()
        with self._stats_lock:
            self._running += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            with self._stats_lock:
                self._running -= 1
            self._slots.release()

    async def _acquire_slot(self) -> None:
        with self._stats_lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            with self._stats_lock:
                self._rejected += 1
            logger.warning("No inference slot free after %.2fs; rejecting submission", self._queue_timeout)
            raise InferenceRejectedError(f"No inference slot free after {self._queue_timeout:g}s") from None
        finally:
            with self._stats_lock:
                self._waiting -= 1

    @property
    def active_count(self) -> int:
        """Predictions currently running on worker threads."""
        with self._stats_lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Submissions waiting for a slot."""
        with self._stats_lock:
            return self._waiting

    @property
    def rejected_count(self) -> int:
        """Submissions refused since startup."""
        with self._stats_lock:
            return self._rejected

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
