from __future__ import annotations

import threading
from collections.abc import Callable

import structlog

logger = structlog.get_logger()


class PeriodicWorker:
    """Calls ``run`` every ``interval_seconds`` until ``stop_event`` is set.

    A failing run is logged and the loop carries on. Setting the stop event cuts
    the wait short but lets a run that has already started finish.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        run: Callable[[], object],
        stop_event: threading.Event,
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.run = run
        self.stop_event = stop_event
        self.run_immediately = run_immediately
        self._thread: threading.Thread | None = None

    def run_once(self) -> None:
        try:
            self.run()
        except Exception:
            logger.exception("periodic_worker_run_failed", worker=self.name)

    def run_forever(self) -> None:
        logger.info("periodic_worker_started", worker=self.name, interval_seconds=self.interval_seconds)
        if self.run_immediately and not self.stop_event.is_set():
            self.run_once()
        while not self.stop_event.wait(self.interval_seconds):
            self.run_once()
        logger.info("periodic_worker_stopped", worker=self.name)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name=f"periodic-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
