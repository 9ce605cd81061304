"""Fire-and-forget background execution on a thread pool.

Jobs submitted with a ``key`` (normally a source ID) are de-duplicated: while
a job for that key is queued or running, further submissions are dropped.
Job exceptions are logged; callers never see them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Run jobs in the background without waiting for them.

    Args:
        max_workers: Size of the worker pool.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lodestone-job"
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future] = {}
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, key: str | None = None) -> Future | None:
        """Schedule ``fn(*args)``.

        Returns:
            The job's future, or None if a job with the same *key* is already
            in flight or the runner has been shut down.
        """
        with self._lock:
            if self._closed:
                logger.warning("Runner is shut down; job dropped", extra={"job_key": key})
                return None
            if key is not None and key in self._in_flight:
                logger.debug("Job already in flight", extra={"job_key": key})
                return None
            future = self._executor.submit(fn, *args)
            if key is not None:
                self._in_flight[key] = future
        future.add_done_callback(lambda f: self._on_done(key, f))
        return future

    def cancel(self, key: str) -> bool:
        """Cancel the queued job for *key*; running jobs cannot be cancelled."""
        with self._lock:
            future = self._in_flight.get(key)
        return future.cancel() if future is not None else False

    def in_flight(self) -> set[str]:
        with self._lock:
            return set(self._in_flight)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def _on_done(self, key: str | None, future: Future) -> None:
        if key is not None:
            with self._lock:
                if self._in_flight.get(key) is future:
                    del self._in_flight[key]
        if future.cancelled():
            logger.info("Background job cancelled", extra={"job_key": key})
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Background job failed",
                extra={"job_key": key},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
