"""In-process background queue for invoice extraction.

Submission returns as soon as the invoice row is committed; extraction runs
on a worker thread. Every submitted job yields a Future, which is the
completion signal tests and tooling can wait on.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ExtractionQueue(ABC):
    """Runs extraction jobs outside the caller's request."""

    @abstractmethod
    def submit(self, job: Callable[..., Any], *args: Any) -> Future:
        """Schedule job(*args) and return its completion future."""

    @abstractmethod
    def join(self, timeout: float | None = None) -> bool:
        """Wait for every job submitted so far.

        Returns:
            True if all jobs finished within timeout
        """

    @abstractmethod
    def shutdown(self) -> None:
        """Stop accepting jobs and wait for running ones."""


class ThreadedExtractionQueue(ExtractionQueue):
    """Thread pool backed queue."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="invoice-extraction"
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ThreadedExtractionQueue":
        return cls(max_workers=settings.extraction_workers)

    def submit(self, job: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(job, *args)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background extraction job raised: {error!r}")

    def join(self, timeout: float | None = None) -> bool:
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
