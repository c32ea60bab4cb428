"""Fixed-interval background tickers.

A ``Ticker`` runs one job on a daemon thread every ``interval`` seconds.
Job failures are logged and counted; the loop keeps going. ``stop()``
prevents any new run from starting; a run already in progress finishes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

CONSECUTIVE_FAILURE_ALERT = 5


class SchedulerError(Exception):
    """Raised when a ticker cannot be scheduled."""


class Ticker:
    """Run *job* every *interval* seconds on a background thread."""

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], object],
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise SchedulerError(f"Ticker '{name}' needs a positive interval")
        self._name = name
        self._interval = interval
        self._job = job
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0
        self._runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def runs(self) -> int:
        return self._runs

    def start(self) -> None:
        if self._thread is not None:
            raise SchedulerError(f"Ticker '{self._name}' already started")
        if self._stop.is_set():
            raise SchedulerError(f"Ticker '{self._name}' was stopped")
        thread = threading.Thread(
            target=self._loop, name=f"ticker-{self._name}", daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as exc:
            raise SchedulerError(f"Cannot start ticker '{self._name}': {exc}") from exc
        self._thread = thread
        logger.info("Ticker %s started (every %ss)", self._name, self._interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(
                    "Ticker %s still finishing its current run", self._name,
                )
        logger.info("Ticker %s stopped", self._name)

    def _loop(self) -> None:
        if self._run_immediately:
            self.run_once()
        while not self._stop.wait(self._interval):
            self.run_once()

    def run_once(self) -> None:
        """Run the job once, counting failures."""
        if self._stop.is_set():
            return
        self._runs += 1
        try:
            self._job()
        except Exception:
            self._consecutive_failures += 1
            logger.exception(
                "Ticker %s job failed (%d consecutive)",
                self._name, self._consecutive_failures,
            )
            if self._consecutive_failures >= CONSECUTIVE_FAILURE_ALERT:
                logger.critical(
                    "Ticker %s has failed %d times in a row",
                    self._name, self._consecutive_failures,
                )
        else:
            self._consecutive_failures = 0
