from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from datetime import timedelta

import structlog
from sqlalchemy.orm import Session

from commonhall.db import SessionLocal
from commonhall.logging_config import configure_logging
from commonhall.services.email_renderer import NewsletterRenderer, TrackedHtmlRenderer
from commonhall.services.email_transport import EmailTransport, get_email_transport
from commonhall.services.journey_delivery import TransportStepDeliverer
from commonhall.services.journeys import run_journey_progression_cycle
from commonhall.services.locks import MutexLock, build_mutex_lock
from commonhall.services.newsletters import (
    NewsletterSendProcessor,
    enqueue_due_newsletters,
    resume_interrupted_sends,
)
from commonhall.services.publishing import run_scheduled_publishing_cycle
from commonhall.settings import Settings, settings
from packages.bulk_send import RetryPolicy

from .dispatcher import NewsletterDispatcher
from .periodic import PeriodicWorker

logger = structlog.get_logger()


def retry_policy_from(config: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.newsletter_max_retries,
        delays_seconds=tuple(config.newsletter_retry_delays_seconds),
    )


class WorkerRuntime:
    """In-process host for the three sweepers and the newsletter dispatcher."""

    def __init__(
        self,
        config: Settings = settings,
        session_factory: Callable[[], Session] = SessionLocal,
        lock: MutexLock | None = None,
        transport: EmailTransport | None = None,
        renderer: NewsletterRenderer | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.stop_event = stop_event or threading.Event()
        self.lock = lock or build_mutex_lock()
        self.transport = transport or get_email_transport(config)
        self.processor = NewsletterSendProcessor(
            session_factory=session_factory,
            renderer=renderer or TrackedHtmlRenderer(),
            transport=self.transport,
            lock=self.lock,
            base_url=config.app_base_url,
            policy=retry_policy_from(config),
            batch_size=config.newsletter_batch_size,
            batch_delay_seconds=config.newsletter_batch_delay_seconds,
            stop_event=self.stop_event,
            send_lock_ttl_seconds=config.newsletter_send_lock_ttl_seconds,
        )
        self.dispatcher = NewsletterDispatcher(self.processor.process, self.stop_event)
        self.workers = [
            PeriodicWorker(
                "scheduled-publishing",
                config.scheduled_publishing_interval_seconds,
                self.publish_cycle,
                self.stop_event,
                run_immediately=True,
            ),
            PeriodicWorker(
                "journey-progression",
                config.journey_progression_interval_seconds,
                self.journey_cycle,
                self.stop_event,
            ),
            PeriodicWorker(
                "newsletter-sweep",
                config.newsletter_sweep_interval_seconds,
                self.newsletter_sweep,
                self.stop_event,
                run_immediately=True,
            ),
        ]

    def publish_cycle(self) -> int:
        with self.session_factory() as db:
            return run_scheduled_publishing_cycle(
                db, self.lock, lock_ttl_seconds=self.config.scheduled_publishing_lock_ttl_seconds
            )

    def journey_cycle(self) -> int:
        with self.session_factory() as db:
            deliverer = TransportStepDeliverer(db, self.transport, self.config.app_base_url)
            return run_journey_progression_cycle(
                db,
                self.lock,
                deliverer,
                lock_ttl_seconds=self.config.journey_progression_lock_ttl_seconds,
                auto_complete_after=timedelta(days=self.config.journey_auto_complete_days),
            )

    def newsletter_sweep(self) -> int:
        with self.session_factory() as db:
            return enqueue_due_newsletters(db, self.dispatcher.enqueue)

    def start(self) -> None:
        with self.session_factory() as db:
            resume_interrupted_sends(db, self.dispatcher.enqueue)
        for worker in self.workers:
            worker.start()
        self.dispatcher.start()
        logger.info("worker_runtime_started", workers=[worker.name for worker in self.workers], degraded_lock=self.lock.degraded)

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        for worker in self.workers:
            worker.join(timeout)
        self.dispatcher.join(timeout)

    def install_signal_handlers(self) -> None:
        def _handle(signum: int, _frame: object) -> None:
            logger.info("worker_runtime_stopping", signal=signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


def main() -> None:
    configure_logging()
    runtime = WorkerRuntime()
    runtime.install_signal_handlers()
    runtime.start()
    while not runtime.stop_event.wait(1.0):
        pass
    runtime.join(timeout=30)
    logger.info("worker_runtime_stopped")
