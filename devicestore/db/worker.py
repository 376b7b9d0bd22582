"""Single-worker queue for background transactions.

One ``ThreadPoolExecutor`` with exactly one worker thread: submissions run
in FIFO order and never overlap.  ``submit`` returns the ``Future`` so callers
can wait on it, but nothing requires them to.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class WorkerClosed(RuntimeError):
    """Raised when a submission is attempted after the worker is shut down."""


class SerialWorker:
    def __init__(self, name: str = "devicestore-tx") -> None:
        self.name = name
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._lock = Lock()
        self._pending = 0
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        with self._lock:
            if self._closed:
                raise WorkerClosed(f"worker {self.name} is shut down")
            future = self._pool.submit(fn, *args)
            self._pending += 1
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, _future: Future) -> None:
        with self._lock:
            self._pending -= 1

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self, wait: bool = True, final: Optional[Callable[[], Any]] = None) -> None:
        """Stop accepting work; queued jobs still run before the thread exits.

        ``final`` is queued behind every job accepted so far and is the last
        thing the worker runs.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if final is not None:
                self._pool.submit(final)
        logger.debug("Shutting down %s (pending=%d, wait=%s)", self.name, self._pending, wait)
        self._pool.shutdown(wait=wait)
