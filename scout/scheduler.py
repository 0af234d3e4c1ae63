"""Background polling: page-by-page sync and PR detection on independent timers."""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds on a daemon thread.

    A cycle that finds the previous one still running is skipped.
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], None]) -> None:
        self.name = name
        self.interval = interval
        self.fn = fn
        self._stop = threading.Event()
        self._running = threading.Lock()
        self._thread: threading.Thread | None = None

    def run_once(self) -> bool:
        """Run one cycle now; False if a cycle was already in progress."""
        if not self._running.acquire(blocking=False):
            logger.info("%s: previous cycle still running, skipping", self.name)
            return False
        try:
            self.fn()
        except Exception:
            logger.exception("%s cycle failed", self.name)
        finally:
            self._running.release()
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"scout-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started %s every %.0fs", self.name, self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None


class Scheduler:
    def __init__(self, tasks: list[PeriodicTask]) -> None:
        self.tasks = tasks

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()
