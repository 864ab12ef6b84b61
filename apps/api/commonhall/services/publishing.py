from __future__ import annotations

import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ContentStatus, NewsArticle
from .events import write_event
from .locks import MutexLock

logger = structlog.get_logger()

SCHEDULED_PUBLISHING_LOCK_KEY = "scheduled-publishing:lock"


def _now() -> datetime:
    return datetime.now(UTC)


def due_articles(db: Session, now: datetime) -> list[NewsArticle]:
    return list(
        db.scalars(
            select(NewsArticle).where(
                NewsArticle.status == ContentStatus.SCHEDULED,
                NewsArticle.scheduled_at.is_not(None),
                NewsArticle.scheduled_at <= now,
                NewsArticle.deleted_at.is_(None),
            )
        ).all()
    )


def run_scheduled_publishing_cycle(
    db: Session,
    lock: MutexLock,
    now: datetime | None = None,
    lock_ttl_seconds: float = 55,
) -> int:
    """Publish every due article in one transaction; returns how many flipped.

    A failure rolls back the whole batch, so articles stay scheduled and the next
    cycle picks them up again.
    """
    with lock.guard(SCHEDULED_PUBLISHING_LOCK_KEY, lock_ttl_seconds) as acquired:
        if not acquired:
            logger.debug("scheduled_publishing_skipped", reason="lock held by another instance")
            return 0

        now = now or _now()
        try:
            articles = due_articles(db, now)
            if not articles:
                logger.debug("scheduled_publishing_idle")
                return 0

            published_ids = [str(article.id) for article in articles]
            for article in articles:
                article.status = ContentStatus.PUBLISHED
                article.published_at = now
                article.scheduled_at = None
                write_event(
                    db=db,
                    channel="news",
                    event_type="ARTICLE_PUBLISHED",
                    subject_type="news_article",
                    subject_id=article.id,
                    payload_json={"title": article.title, "published_at": now.isoformat()},
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info("articles_published", count=len(published_ids), article_ids=published_ids)
    return len(published_ids)


def schedule_article(db: Session, article_id: uuid.UUID, scheduled_at: datetime) -> bool:
    article = db.scalar(select(NewsArticle).where(NewsArticle.id == article_id, NewsArticle.deleted_at.is_(None)))
    if article is None or article.status not in {ContentStatus.DRAFT, ContentStatus.SCHEDULED}:
        return False
    article.status = ContentStatus.SCHEDULED
    article.scheduled_at = scheduled_at
    db.commit()
    return True
