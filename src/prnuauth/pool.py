"""Analysis concurrency layer.

Architecture:
    caller (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> numpy pixel work

Pixel processing never runs on the event loop thread. The pool imposes no
deadline of its own; callers that need one wrap ``run`` in
``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AnalysisPool:
    """Manages the semaphore and thread pool for PRNU analysis work."""

    def __init__(self, max_workers: int) -> None:
        self._max_workers = max_workers
        self._semaphore: asyncio.Semaphore | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="prnu-analysis",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the analysis thread pool.

        Waits for a free slot, runs the function in the executor, then
        releases. Exceptions raised by ``func`` propagate unchanged.
        """
        semaphore = self._get_semaphore()
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await semaphore.acquire()
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the pool can be built outside a running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_workers)
        return self._semaphore

    @property
    def active_count(self) -> int:
        """Number of currently running analysis tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of tasks waiting for a pool slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.info("Analysis pool shut down")
