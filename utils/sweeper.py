import threading
from typing import Callable

from utils.logger import get_logger

logger = get_logger(__name__)


class PeriodicSweeper:
    """Runs ``job`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, job: Callable[[], int]):
        self.name = name
        self.interval = interval
        self.job = job
        self._stop = threading.Event()
        self._thread = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"sweeper-{self.name}", daemon=True)
        self._thread.start()
        logger.info("sweeper_started", sweeper=self.name, interval=self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def run_once(self) -> int:
        try:
            swept = self.job() or 0
        except Exception as exc:
            # a failing sweep must not kill the thread; next tick retries
            logger.error("sweeper_failed", sweeper=self.name, error=str(exc))
            return 0
        if swept:
            logger.info("sweeper_swept", sweeper=self.name, count=swept)
        return swept

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()
