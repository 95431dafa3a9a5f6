"""Run-on-owning-thread primitive used by local walkers.

UI toolkits only allow their object graph to be read from the thread that
created it.  A ``Dispatcher`` hands a callback to that thread and blocks the
caller until the callback has finished.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Dispatcher(ABC):
    """Hands work to the thread that owns a UI."""

    @abstractmethod
    def check_access(self) -> bool:
        """True if the calling thread is the owning thread."""
        ...

    @abstractmethod
    def post(self, callback: Callable[[], None]) -> None:
        """Schedule *callback* on the owning thread without waiting."""
        ...

    def invoke(self, callback: Callable[[], Any], timeout: float | None = None) -> Any:
        """Run *callback* on the owning thread and return its result.

        Runs inline when already on the owning thread.  Exceptions raised
        by the callback propagate to the caller; a TimeoutError is raised
        if the owning thread does not finish within *timeout* seconds.
        """
        if self.check_access():
            return callback()

        future: Future = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(callback())
            except BaseException as exc:
                future.set_exception(exc)

        self.post(run)
        try:
            return future.result(timeout)
        except FutureTimeout:
            future.cancel()
            raise


class ThreadDispatcher(Dispatcher):
    """Dispatcher backed by its own worker thread and a FIFO work queue."""

    def __init__(self, name: str = "lvt-ui") -> None:
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = False

    def start(self) -> ThreadDispatcher:
        if not self._started:
            self._started = True
            self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        if self._started:
            self._queue.put(None)
            self._thread.join(timeout)

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    def check_access(self) -> bool:
        return threading.current_thread() is self._thread

    def post(self, callback: Callable[[], None]) -> None:
        if not self._started:
            raise RuntimeError("Dispatcher thread is not running")
        self._queue.put(callback)

    def _run(self) -> None:
        while True:
            callback = self._queue.get()
            if callback is None:
                return
            try:
                callback()
            except Exception:
                logger.exception("Unhandled error in dispatched callback")
