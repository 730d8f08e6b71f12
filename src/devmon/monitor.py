"""Background cycle worker for devmon."""

import logging
import threading
from collections.abc import Callable
from queue import Queue

from devmon.models import CycleSnapshot

logger = logging.getLogger(__name__)

MIN_POLL_RATE = 0.1


class MonitorWorker:
    """
    Runs one full cycle per interval on a daemon thread.

    Each completed snapshot is pushed to a thread-safe Queue; a cycle that
    returns None (transient probe failure) publishes nothing. Exceptions
    from a cycle are logged and the loop keeps running.
    """

    def __init__(
        self,
        cycle: Callable[[], CycleSnapshot | None],
        update_queue: Queue[CycleSnapshot],
        poll_rate: float = 30.0,
    ) -> None:
        """
        Initialize the MonitorWorker.

        Args:
            cycle: Callable performing one cycle (``DevmonService.run_cycle``
                for the monitor, ``DevmonService.status`` for display-only use).
            update_queue: Thread-safe queue to push snapshots to.
            poll_rate: Seconds between cycles.
        """
        self._cycle = cycle
        self._queue = update_queue
        self._poll_rate = max(MIN_POLL_RATE, poll_rate)
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(MIN_POLL_RATE, value)

    @property
    def is_running(self) -> bool:
        """Check if the worker thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="MonitorWorker",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the worker thread.

        An in-flight cycle (including a kill grace window) runs to completion.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def refresh(self) -> None:
        """Run the next cycle now instead of waiting for the interval."""
        self._wake_event.set()

    def run_once(self) -> CycleSnapshot | None:
        """Run a single cycle on the calling thread and publish its snapshot."""
        try:
            snapshot = self._cycle()
        except Exception:
            logger.exception("Monitor cycle failed")
            return None
        if snapshot is not None:
            self._queue.put(snapshot)
        return snapshot

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            self.run_once()

            # Wait for poll_rate seconds, an explicit refresh, or stop
            self._wake_event.wait(timeout=self._poll_rate)
            self._wake_event.clear()
