"""Bounded parallel dispatch with memory back-pressure."""
import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Sequence, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class MemoryMonitor:
    """Compares this process's resident memory against a ceiling."""

    def __init__(self, limit_mb: float, process: Optional[psutil.Process] = None):
        """Initialize monitor.

        Args:
            limit_mb: Resident set size (MiB) treated as memory pressure
            process: Process to watch (defaults to the current one)
        """
        self.limit_mb = limit_mb
        self.process = process or psutil.Process()

    def rss_mb(self) -> float:
        return self.process.memory_info().rss / 1024 / 1024

    def under_pressure(self) -> bool:
        return self.rss_mb() > self.limit_mb


class ConcurrencyCoordinator:
    """Runs a pure per-item function over a bounded thread pool.

    Tasks are admitted up to an active limit. After every completion the
    memory monitor is consulted and the limit halves under pressure, never
    below one. In-flight tasks are never cancelled. Results come back in
    input order, whatever order the tasks finished in.
    """

    def __init__(self, max_workers: int, monitor: Optional[MemoryMonitor] = None):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers
        self.monitor = monitor
        self.active_limit = max_workers
        self.reductions = 0

    def _check_pressure(self):
        if self.monitor is None or self.active_limit <= 1:
            return
        if self.monitor.under_pressure():
            self.active_limit = max(1, self.active_limit // 2)
            self.reductions += 1
            logger.warning(
                "Memory above %s MiB, reducing active workers to %d",
                self.monitor.limit_mb, self.active_limit,
            )

    def map(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        on_error: Optional[Callable[[T, Exception], R]] = None,
    ) -> List[R]:
        """Apply ``fn`` to every item.

        Args:
            fn: Pure function of one item
            items: Work items
            on_error: Builds the result for an item whose task raised; if
                omitted the exception propagates after the pool drains

        Returns:
            One result per item, in input order
        """
        self.active_limit = self.max_workers
        results: List[Optional[R]] = [None] * len(items)
        pending = deque(enumerate(items))
        first_error: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix='depsweep-worker') as executor:
            in_flight = {}
            while pending or in_flight:
                while pending and len(in_flight) < self.active_limit:
                    index, item = pending.popleft()
                    in_flight[executor.submit(fn, item)] = index

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        if on_error is None:
                            first_error = first_error or e
                            continue
                        logger.debug("Task for item %d failed: %s", index, e)
                        results[index] = on_error(items[index], e)

                self._check_pressure()

        if first_error is not None:
            raise first_error
        return results
