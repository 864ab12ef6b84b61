from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import EmailRecipient, EmailRecipientStatus
from .events import write_event

logger = structlog.get_logger()

# Position in the engagement funnel; status only ever moves right.
FUNNEL = (
    EmailRecipientStatus.SENT,
    EmailRecipientStatus.DELIVERED,
    EmailRecipientStatus.OPENED,
    EmailRecipientStatus.CLICKED,
)


def _now() -> datetime:
    return datetime.now(UTC)


def _advance(recipient: EmailRecipient, target: EmailRecipientStatus) -> None:
    if FUNNEL.index(target) > FUNNEL.index(recipient.status):
        recipient.status = target


def _tracked_recipient(db: Session, token: str) -> EmailRecipient | None:
    recipient = db.scalar(select(EmailRecipient).where(EmailRecipient.tracking_token == token))
    if recipient is None:
        logger.debug("tracking_token_unknown")
        return None
    if recipient.status not in FUNNEL:
        logger.info("tracking_ignored", recipient_id=str(recipient.id), status=recipient.status.value)
        return None
    return recipient


def _mark_open(recipient: EmailRecipient, now: datetime) -> None:
    if recipient.delivered_at is None:
        recipient.delivered_at = now
    if recipient.opened_at is None:
        recipient.opened_at = now
    _advance(recipient, EmailRecipientStatus.OPENED)


def record_open(db: Session, token: str, now: datetime | None = None) -> bool:
    recipient = _tracked_recipient(db, token)
    if recipient is None:
        return False
    _mark_open(recipient, now or _now())
    recipient.open_count += 1
    db.commit()
    return True


def record_click(db: Session, token: str, url: str, now: datetime | None = None) -> bool:
    recipient = _tracked_recipient(db, token)
    if recipient is None:
        return False
    now = now or _now()
    _mark_open(recipient, now)
    if recipient.clicked_at is None:
        recipient.clicked_at = now
    recipient.click_count += 1
    _advance(recipient, EmailRecipientStatus.CLICKED)
    write_event(
        db=db,
        channel="newsletters",
        event_type="NEWSLETTER_LINK_CLICKED",
        subject_type="email_recipient",
        subject_id=recipient.id,
        payload_json={"newsletter_id": str(recipient.newsletter_id), "url": url[:2000]},
        source="tracking",
    )
    db.commit()
    return True
