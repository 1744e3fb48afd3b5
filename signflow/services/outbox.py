from __future__ import annotations

import queue
import threading
from typing import Callable, Generic, TypeVar

from signflow.core.logging_setup import logger

T = TypeVar("T")

_STOP = object()


class BackgroundQueue(Generic[T]):
    """In-process outbound queue drained by one daemon worker thread.

    Producers never block on the handler and never see its failures: every
    exception raised while handling an item is logged and dropped. With
    ``synchronous=True`` items are handled inline, which is what tests and
    one-shot scripts use.
    """

    def __init__(self, name: str, handler: Callable[[T], None], *, synchronous: bool = False) -> None:
        self.name = name
        self.handler = handler
        self.synchronous = synchronous
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.synchronous:
            return
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._run, name=f"{self.name}-worker", daemon=True)
            self._thread.start()
        logger.info("Background queue %s started", self.name)

    def submit(self, item: T) -> None:
        if self.synchronous:
            self._handle(item)
            return
        self._queue.put(item)

    def drain(self) -> None:
        """Block until every submitted item has been handled."""
        if self.synchronous:
            return
        if not self.running:
            self.start()
        self._queue.join()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
        thread.join(timeout)
        with self._lock:
            self._thread = None
        logger.info("Background queue %s stopped", self.name)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._handle(item)
            finally:
                self._queue.task_done()

    def _handle(self, item: T) -> None:
        try:
            self.handler(item)
        except Exception:
            logger.exception("Queue %s dropped an item after a handler failure", self.name)
