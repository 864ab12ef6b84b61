from __future__ import annotations

import secrets
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from packages.bulk_send import MessageState, OutboundMessage, RetryPolicy, chunked, send_with_retries

from ..models import EmailNewsletter, EmailRecipient, EmailRecipientStatus, NewsletterStatus, User
from .email_renderer import NewsletterContent, NewsletterRenderer, RecipientAddress
from .email_transport import EmailTransport
from .events import write_event
from .locks import MutexLock

logger = structlog.get_logger()

Enqueue = Callable[[uuid.UUID], None]
SessionFactory = Callable[[], Session]

REACHED_SENT = (
    EmailRecipientStatus.SENT,
    EmailRecipientStatus.DELIVERED,
    EmailRecipientStatus.OPENED,
    EmailRecipientStatus.CLICKED,
)


def _now() -> datetime:
    return datetime.now(UTC)


def newsletter_send_lock_key(newsletter_id: uuid.UUID) -> str:
    return f"newsletter-send:{newsletter_id}:lock"


def generate_tracking_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class RecipientTarget:
    email: str
    user_id: uuid.UUID | None = None


class RecipientResolver(Protocol):
    def resolve(self, db: Session, newsletter: EmailNewsletter) -> list[RecipientTarget]: ...


class ActiveUsersResolver:
    """Every active, non-deleted user with an email address."""

    def resolve(self, db: Session, newsletter: EmailNewsletter) -> list[RecipientTarget]:
        users = db.scalars(
            select(User).where(User.is_active.is_(True), User.deleted_at.is_(None), User.email.is_not(None))
        ).all()
        return [RecipientTarget(email=user.email, user_id=user.id) for user in users if user.email]


def schedule_newsletter(db: Session, newsletter_id: uuid.UUID, scheduled_at: datetime) -> bool:
    newsletter = db.scalar(
        select(EmailNewsletter).where(EmailNewsletter.id == newsletter_id, EmailNewsletter.deleted_at.is_(None))
    )
    if newsletter is None or newsletter.status not in {NewsletterStatus.DRAFT, NewsletterStatus.SCHEDULED}:
        return False
    newsletter.status = NewsletterStatus.SCHEDULED
    newsletter.scheduled_at = scheduled_at
    db.commit()
    return True


def queue_for_sending(
    db: Session,
    newsletter_id: uuid.UUID,
    enqueue: Enqueue,
    resolver: RecipientResolver | None = None,
) -> bool:
    """Claim the newsletter for dispatch and hand it to ``enqueue``.

    The claim is a conditional update, so of two concurrent callers only one sees a
    row change. Recipients are created in the same transaction; rolling back
    releases the claim.
    """
    resolver = resolver or ActiveUsersResolver()
    try:
        claimed = db.execute(
            update(EmailNewsletter)
            .where(
                EmailNewsletter.id == newsletter_id,
                EmailNewsletter.status.in_([NewsletterStatus.DRAFT, NewsletterStatus.SCHEDULED]),
                EmailNewsletter.deleted_at.is_(None),
            )
            .values(status=NewsletterStatus.SENDING)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            db.rollback()
            logger.info("newsletter_claim_lost", newsletter_id=str(newsletter_id))
            return False

        newsletter = db.get(EmailNewsletter, newsletter_id)
        seen: set[str] = set()
        recipients: list[EmailRecipient] = []
        for target in resolver.resolve(db, newsletter):
            address = target.email.strip()
            if not address or address.lower() in seen:
                continue
            seen.add(address.lower())
            recipients.append(
                EmailRecipient(
                    newsletter_id=newsletter_id,
                    user_id=target.user_id,
                    email=address,
                    tracking_token=generate_tracking_token(),
                    status=EmailRecipientStatus.PENDING,
                )
            )
        if not recipients:
            db.rollback()
            logger.warning("newsletter_has_no_recipients", newsletter_id=str(newsletter_id))
            return False

        db.add_all(recipients)
        write_event(
            db=db,
            channel="newsletters",
            event_type="NEWSLETTER_QUEUED",
            subject_type="email_newsletter",
            subject_id=newsletter_id,
            payload_json={"recipients": len(recipients)},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    enqueue(newsletter_id)
    logger.info("newsletter_queued", newsletter_id=str(newsletter_id), recipients=len(recipients))
    return True


def enqueue_due_newsletters(
    db: Session,
    enqueue: Enqueue,
    now: datetime | None = None,
    resolver: RecipientResolver | None = None,
) -> int:
    now = now or _now()
    due_ids = list(
        db.scalars(
            select(EmailNewsletter.id)
            .where(
                EmailNewsletter.status == NewsletterStatus.SCHEDULED,
                EmailNewsletter.scheduled_at.is_not(None),
                EmailNewsletter.scheduled_at <= now,
                EmailNewsletter.deleted_at.is_(None),
            )
            .order_by(EmailNewsletter.scheduled_at)
        ).all()
    )
    queued = 0
    for newsletter_id in due_ids:
        try:
            if queue_for_sending(db, newsletter_id, enqueue, resolver):
                queued += 1
        except Exception:
            logger.exception("newsletter_queue_failed", newsletter_id=str(newsletter_id))
    return queued


def resume_interrupted_sends(db: Session, enqueue: Enqueue) -> int:
    """Re-enqueue newsletters left in SENDING; only their PENDING recipients go out."""
    ids = list(
        db.scalars(
            select(EmailNewsletter.id).where(
                EmailNewsletter.status == NewsletterStatus.SENDING,
                EmailNewsletter.deleted_at.is_(None),
            )
        ).all()
    )
    for newsletter_id in ids:
        enqueue(newsletter_id)
    if ids:
        logger.info("newsletter_sends_resumed", count=len(ids))
    return len(ids)


class NewsletterSendProcessor:
    """Sends one claimed newsletter in ordered batches.

    Every database step uses a short session from ``session_factory``; nothing is
    held open across a transport call or a retry sleep.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        renderer: NewsletterRenderer,
        transport: EmailTransport,
        lock: MutexLock,
        base_url: str,
        policy: RetryPolicy | None = None,
        batch_size: int = 100,
        batch_delay_seconds: float = 0.5,
        sleep: Callable[[float], object] | None = None,
        stop_event: threading.Event | None = None,
        send_lock_ttl_seconds: float = 3600,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.session_factory = session_factory
        self.renderer = renderer
        self.transport = transport
        self.lock = lock
        self.base_url = base_url
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.stop_event = stop_event
        if sleep is None:
            sleep = stop_event.wait if stop_event is not None else time.sleep
        self.sleep = sleep
        self.send_lock_ttl_seconds = send_lock_ttl_seconds
        self.clock = clock

    def _stop_requested(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def process(self, newsletter_id: uuid.UUID) -> NewsletterStatus | None:
        """Returns the newsletter's status after the job, or None when it was skipped."""
        key = newsletter_send_lock_key(newsletter_id)
        token = uuid.uuid4().hex
        if not self.lock.try_acquire(key, token, self.send_lock_ttl_seconds):
            logger.info("newsletter_send_skipped", newsletter_id=str(newsletter_id), reason="lock held")
            return None
        try:
            return self._process(newsletter_id, lambda: self.lock.extend(key, token, self.send_lock_ttl_seconds))
        except Exception as exc:
            logger.exception("newsletter_send_failed", newsletter_id=str(newsletter_id))
            self._mark_failed(newsletter_id, str(exc))
            return NewsletterStatus.FAILED
        finally:
            self.lock.release(key, token)

    def _process(self, newsletter_id: uuid.UUID, keep_lock: Callable[[], bool]) -> NewsletterStatus | None:
        with self.session_factory() as db:
            newsletter = db.get(EmailNewsletter, newsletter_id)
            if newsletter is None or newsletter.deleted_at is not None:
                logger.warning("newsletter_not_found", newsletter_id=str(newsletter_id))
                return None
            if newsletter.status != NewsletterStatus.SENDING:
                logger.info("newsletter_job_dropped", newsletter_id=str(newsletter_id), status=newsletter.status.value)
                return newsletter.status
            content = NewsletterContent(
                id=newsletter.id,
                title=newsletter.title,
                subject=newsletter.subject,
                content=newsletter.content,
                preview_text=newsletter.preview_text,
            )
            pending = [
                RecipientAddress(id=row.id, email=row.email, tracking_token=row.tracking_token)
                for row in db.scalars(
                    select(EmailRecipient)
                    .where(
                        EmailRecipient.newsletter_id == newsletter_id,
                        EmailRecipient.status == EmailRecipientStatus.PENDING,
                    )
                    .order_by(EmailRecipient.created_at, EmailRecipient.id)
                ).all()
            ]

        batches = list(chunked(pending, self.batch_size))
        for position, batch in enumerate(batches):
            if self._stop_requested():
                logger.info(
                    "newsletter_send_interrupted",
                    newsletter_id=str(newsletter_id),
                    remaining_batches=len(batches) - position,
                )
                return NewsletterStatus.SENDING
            # The lease covers one batch with its worst-case backoff.
            if not keep_lock():
                logger.warning("newsletter_send_lock_lost", newsletter_id=str(newsletter_id))
                return NewsletterStatus.SENDING
            messages = [
                OutboundMessage(
                    recipient_id=str(recipient.id),
                    to_address=recipient.email,
                    subject=content.subject,
                    html=self.renderer.render(content, recipient, self.base_url),
                )
                for recipient in batch
            ]
            send_with_retries(
                messages,
                self.transport.send_bulk,
                self.policy,
                sleep=self.sleep,
                clock=self.clock,
                should_stop=self._stop_requested,
            )
            self._persist_batch(messages)
            batch_sent = sum(1 for message in messages if message.state == MessageState.SENT)
            batch_failed = sum(1 for message in messages if message.state == MessageState.FAILED)
            logger.debug(
                "newsletter_batch_sent",
                newsletter_id=str(newsletter_id),
                batch=position + 1,
                of=len(batches),
                sent=batch_sent,
                failed=batch_failed,
            )
            if batch_sent + batch_failed < len(messages):
                logger.info(
                    "newsletter_send_interrupted",
                    newsletter_id=str(newsletter_id),
                    remaining_batches=len(batches) - position,
                )
                return NewsletterStatus.SENDING
            if position < len(batches) - 1:
                self.sleep(self.batch_delay_seconds)

        return self._finish(newsletter_id)

    def _persist_batch(self, messages: list[OutboundMessage]) -> None:
        with self.session_factory() as db:
            rows = {
                str(row.id): row
                for row in db.scalars(
                    select(EmailRecipient).where(
                        EmailRecipient.id.in_([uuid.UUID(message.recipient_id) for message in messages])
                    )
                ).all()
            }
            for message in messages:
                row = rows.get(message.recipient_id)
                if row is None or row.status != EmailRecipientStatus.PENDING or not message.is_terminal:
                    continue
                if message.state == MessageState.SENT:
                    row.status = EmailRecipientStatus.SENT
                    row.sent_at = message.sent_at
                    row.error_message = None
                else:
                    row.status = EmailRecipientStatus.FAILED
                    row.error_message = (message.error_message or "send failed")[:500]
            db.commit()

    def _finish(self, newsletter_id: uuid.UUID) -> NewsletterStatus:
        with self.session_factory() as db:
            statuses = db.scalars(
                select(EmailRecipient.status).where(EmailRecipient.newsletter_id == newsletter_id)
            ).all()
            sent = sum(1 for status in statuses if status in REACHED_SENT)
            failed = sum(1 for status in statuses if status == EmailRecipientStatus.FAILED)
            # Counted over every recipient, including those sent before an interruption.
            status = NewsletterStatus.FAILED if failed and not sent else NewsletterStatus.SENT
            newsletter = db.get(EmailNewsletter, newsletter_id)
            newsletter.status = status
            newsletter.sent_at = self.clock()
            write_event(
                db=db,
                channel="newsletters",
                event_type="NEWSLETTER_SENT" if status == NewsletterStatus.SENT else "NEWSLETTER_FAILED",
                subject_type="email_newsletter",
                subject_id=newsletter_id,
                payload_json={"sent": sent, "failed": failed},
            )
            db.commit()
        logger.info("newsletter_send_finished", newsletter_id=str(newsletter_id), status=status.value, sent=sent, failed=failed)
        return status

    def _mark_failed(self, newsletter_id: uuid.UUID, error: str) -> None:
        try:
            with self.session_factory() as db:
                newsletter = db.get(EmailNewsletter, newsletter_id)
                if newsletter is None or newsletter.status != NewsletterStatus.SENDING:
                    return
                newsletter.status = NewsletterStatus.FAILED
                write_event(
                    db=db,
                    channel="newsletters",
                    event_type="NEWSLETTER_FAILED",
                    subject_type="email_newsletter",
                    subject_id=newsletter_id,
                    payload_json={"error": error[:500]},
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("newsletter_mark_failed_error", newsletter_id=str(newsletter_id))


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator * 100, 2) if denominator else 0.0


def newsletter_analytics(db: Session, newsletter_id: uuid.UUID) -> dict[str, Any] | None:
    newsletter = db.get(EmailNewsletter, newsletter_id)
    if newsletter is None:
        return None
    recipients = db.scalars(select(EmailRecipient).where(EmailRecipient.newsletter_id == newsletter_id)).all()

    sent = sum(1 for row in recipients if row.status in REACHED_SENT)
    delivered = sum(1 for row in recipients if row.delivered_at is not None)
    opened = sum(1 for row in recipients if row.opened_at is not None)
    clicked = sum(1 for row in recipients if row.clicked_at is not None)
    return {
        "newsletter_id": str(newsletter.id),
        "status": newsletter.status.value,
        "total_recipients": len(recipients),
        "pending": sum(1 for row in recipients if row.status == EmailRecipientStatus.PENDING),
        "sent": sent,
        "delivered": delivered,
        "opened": opened,
        "clicked": clicked,
        "failed": sum(1 for row in recipients if row.status == EmailRecipientStatus.FAILED),
        "total_opens": sum(row.open_count for row in recipients),
        "total_clicks": sum(row.click_count for row in recipients),
        "open_rate": _rate(opened, sent),
        "click_rate": _rate(clicked, sent),
        "click_to_open_rate": _rate(clicked, opened),
    }
