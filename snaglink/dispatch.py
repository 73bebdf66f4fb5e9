"""
Bounded background work queue.

Side effects that must not delay or fail a request (audit sink writes,
contractor notifications) are queued here and run on a single daemon
worker. When the queue is full the job is dropped and a warning logged.
"""

import logging
import queue
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class BackgroundDispatcher:

    def __init__(self, maxsize: int = 1000, name: str = "snaglink-dispatch"):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    def start(self) -> None:
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()

    def submit(self, label: str, fn: Callable[..., None], *args: Any) -> bool:
        """
        Queue fn(*args) for the worker.

        Returns:
            False if the queue was full and the job was dropped
        """
        self.start()
        try:
            self._queue.put_nowait((label, fn, args))
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning("dispatch queue full, dropped %s job", label)
            return False

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                label, fn, args = item
                try:
                    fn(*args)
                except Exception:
                    logger.exception("background %s job failed", label)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued job has run."""
        if self._thread is not None:
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Drain outstanding jobs and stop the worker."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)
