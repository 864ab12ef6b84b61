from __future__ import annotations

import queue
import threading
import uuid
from collections.abc import Callable

import structlog

logger = structlog.get_logger()


class NewsletterDispatcher:
    """Single consumer of newsletter send jobs, handled one at a time in FIFO order."""

    def __init__(
        self,
        process: Callable[[uuid.UUID], object],
        stop_event: threading.Event,
        poll_seconds: float = 1.0,
    ) -> None:
        self.process = process
        self.stop_event = stop_event
        self.poll_seconds = poll_seconds
        self.jobs: queue.Queue[uuid.UUID] = queue.Queue()
        self._thread: threading.Thread | None = None

    def enqueue(self, newsletter_id: uuid.UUID) -> None:
        self.jobs.put(newsletter_id)
        logger.debug("newsletter_job_enqueued", newsletter_id=str(newsletter_id), depth=self.jobs.qsize())

    def pending(self) -> int:
        return self.jobs.qsize()

    def run_once(self, timeout: float | None = None) -> bool:
        """Handle the next job; False when none arrived within ``timeout``."""
        try:
            newsletter_id = self.jobs.get(timeout=timeout) if timeout is not None else self.jobs.get_nowait()
        except queue.Empty:
            return False
        try:
            self.process(newsletter_id)
        except Exception:
            logger.exception("newsletter_job_failed", newsletter_id=str(newsletter_id))
        finally:
            self.jobs.task_done()
        return True

    def run_forever(self) -> None:
        logger.info("newsletter_dispatcher_started")
        while not self.stop_event.is_set():
            self.run_once(timeout=self.poll_seconds)
        logger.info("newsletter_dispatcher_stopped", abandoned_jobs=self.jobs.qsize())

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name="newsletter-dispatcher", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
