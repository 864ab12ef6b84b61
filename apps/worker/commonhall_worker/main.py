import os
import uuid
from datetime import timedelta
from functools import lru_cache

from celery import Celery
from celery.signals import setup_logging, worker_ready

from commonhall.db import SessionLocal
from commonhall.logging_config import configure_logging
from commonhall.services.email_renderer import TrackedHtmlRenderer
from commonhall.services.email_transport import get_email_transport
from commonhall.services.journey_delivery import TransportStepDeliverer
from commonhall.services.journeys import run_journey_progression_cycle
from commonhall.services.locks import MutexLock, build_mutex_lock
from commonhall.services.newsletters import (
    NewsletterSendProcessor,
    enqueue_due_newsletters,
    resume_interrupted_sends,
)
from commonhall.services.publishing import run_scheduled_publishing_cycle
from commonhall.settings import settings
from commonhall_worker.runtime import retry_policy_from

broker_url = os.getenv("CELERY_BROKER_URL", settings.redis_url or "redis://localhost:6379/0")
app = Celery("commonhall-worker", broker=broker_url, backend=broker_url)
app.conf.task_routes = {"worker.newsletters.send": {"queue": "newsletters"}}
app.conf.beat_schedule = {
    "scheduled-publishing": {
        "task": "worker.publishing.tick",
        "schedule": timedelta(seconds=settings.scheduled_publishing_interval_seconds),
    },
    "journey-progression": {
        "task": "worker.journeys.tick",
        "schedule": timedelta(seconds=settings.journey_progression_interval_seconds),
    },
    "newsletter-sweep": {
        "task": "worker.newsletters.sweep_tick",
        "schedule": timedelta(seconds=settings.newsletter_sweep_interval_seconds),
    },
}


@setup_logging.connect
def _configure_worker_logging(**_kwargs: object) -> None:
    configure_logging()


@lru_cache(maxsize=1)
def _mutex_lock() -> MutexLock:
    return build_mutex_lock()


def _enqueue_send(newsletter_id: uuid.UUID) -> None:
    newsletter_send.delay(str(newsletter_id))


@worker_ready.connect
def _resume_on_start(**_kwargs: object) -> None:
    with SessionLocal() as db:
        resume_interrupted_sends(db, _enqueue_send)


@app.task(name="worker.health.ping")
def ping() -> str:
    return "pong"


@app.task(name="worker.publishing.tick")
def publishing_tick() -> int:
    with SessionLocal() as db:
        return run_scheduled_publishing_cycle(
            db, _mutex_lock(), lock_ttl_seconds=settings.scheduled_publishing_lock_ttl_seconds
        )


@app.task(name="worker.journeys.tick")
def journeys_tick() -> int:
    with SessionLocal() as db:
        deliverer = TransportStepDeliverer(db, get_email_transport(settings), settings.app_base_url)
        return run_journey_progression_cycle(
            db,
            _mutex_lock(),
            deliverer,
            lock_ttl_seconds=settings.journey_progression_lock_ttl_seconds,
            auto_complete_after=timedelta(days=settings.journey_auto_complete_days),
        )


@app.task(name="worker.newsletters.sweep_tick")
def newsletters_sweep_tick() -> int:
    with SessionLocal() as db:
        return enqueue_due_newsletters(db, _enqueue_send)


@app.task(name="worker.newsletters.send")
def newsletter_send(newsletter_id: str) -> str:
    processor = NewsletterSendProcessor(
        session_factory=SessionLocal,
        renderer=TrackedHtmlRenderer(),
        transport=get_email_transport(settings),
        lock=_mutex_lock(),
        base_url=settings.app_base_url,
        policy=retry_policy_from(settings),
        batch_size=settings.newsletter_batch_size,
        batch_delay_seconds=settings.newsletter_batch_delay_seconds,
        send_lock_ttl_seconds=settings.newsletter_send_lock_ttl_seconds,
    )
    status = processor.process(uuid.UUID(newsletter_id))
    return status.value if status is not None else "skipped"
