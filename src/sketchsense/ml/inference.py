"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> SketchClassifier

Classification, model swaps, and backend rebuilds are blocking calls; they
run on the pool so the event loop keeps serving requests. Callers beyond the
semaphore limit wait up to QUEUE_TIMEOUT_SECONDS, then get TimeoutError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from sketchsense.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUEUE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Runs blocking classifier calls off the event loop, N at a time."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="sketch-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on the pool once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            try:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=QUEUE_TIMEOUT_SECONDS)
            finally:
                with self._counter_lock:
                    self._queue_depth -= 1

            with self._counter_lock:
                self._active_count += 1
            try:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, *args)
            finally:
                self._semaphore.release()
                with self._counter_lock:
                    self._active_count -= 1
        except TimeoutError:
            logger.warning("Inference queue timeout after %.1fs", QUEUE_TIMEOUT_SECONDS)
            raise

    @property
    def active_count(self) -> int:
        """Number of calls currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for running calls, then stop the worker threads."""
        self._executor.shutdown(wait=True)
