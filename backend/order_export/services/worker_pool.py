"""
Bounded worker pool for background exports.

ThreadPoolExecutor queues without limit, so capacity (running workers plus
backlog) is enforced with a semaphore. Callers reserve a slot first; when
none is free the reservation fails with ExportQueueFullError instead of
queueing past the bound or blocking the submitter.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from order_export.core.exceptions import ExportQueueFullError

logger = logging.getLogger(__name__)


class SlotReservation:
    """A claimed pool slot. Released exactly once, however many times release() is called."""

    def __init__(self, semaphore: threading.Semaphore):
        self._semaphore = semaphore
        self._lock = threading.Lock()
        self._released = False

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._semaphore.release()

    @property
    def released(self) -> bool:
        return self._released


class ExportWorkerPool:
    def __init__(self, max_workers: int = 2, queue_max: int = 10, thread_name_prefix: str = "ExportWorker"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if queue_max < 0:
            raise ValueError("queue_max must not be negative")
        self.max_workers = max_workers
        self.queue_max = queue_max
        self.capacity = max_workers + queue_max
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=thread_name_prefix
        )

    def reserve(self) -> SlotReservation:
        """Claim a slot without blocking, or raise ExportQueueFullError."""
        if not self._slots.acquire(blocking=False):
            logger.warning(f"Export pool saturated: {self.capacity} slots in use")
            raise ExportQueueFullError(self.capacity)
        return SlotReservation(self._slots)

    def submit(self, reservation: SlotReservation, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run fn in the reserved slot; the slot frees up when fn returns or raises."""
        if reservation.released:
            raise ValueError("Cannot submit with a released reservation")
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except BaseException:
            reservation.release()
            raise
        future.add_done_callback(lambda _: reservation.release())
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
