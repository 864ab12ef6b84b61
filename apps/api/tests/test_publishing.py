from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from commonhall.models import ContentStatus, Event, NewsArticle
from commonhall.services import publishing
from commonhall.services.locks import MutexLock
from commonhall.services.publishing import (
    SCHEDULED_PUBLISHING_LOCK_KEY,
    run_scheduled_publishing_cycle,
    schedule_article,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _article(db_session, status=ContentStatus.SCHEDULED, scheduled_at=None, title="Town hall recap"):
    article = NewsArticle(title=title, status=status, scheduled_at=scheduled_at)
    db_session.add(article)
    db_session.commit()
    return article


def test_publishes_only_due_scheduled_articles(db_session, lock) -> None:
    due = _article(db_session, scheduled_at=T0 - timedelta(minutes=1))
    exactly_now = _article(db_session, scheduled_at=T0)
    future = _article(db_session, scheduled_at=T0 + timedelta(minutes=1))
    draft = _article(db_session, status=ContentStatus.DRAFT, scheduled_at=T0 - timedelta(days=1))

    assert run_scheduled_publishing_cycle(db_session, lock, now=T0) == 2

    db_session.expire_all()
    for article in (due, exactly_now):
        assert article.status == ContentStatus.PUBLISHED
        assert article.published_at == T0
        assert article.scheduled_at is None
    assert future.status == ContentStatus.SCHEDULED
    assert draft.status == ContentStatus.DRAFT

    events = db_session.scalars(select(Event).where(Event.type == "ARTICLE_PUBLISHED")).all()
    assert sorted(event.subject_id for event in events) == sorted([str(due.id), str(exactly_now.id)])


def test_soft_deleted_articles_are_ignored(db_session, lock) -> None:
    article = _article(db_session, scheduled_at=T0 - timedelta(hours=1))
    article.deleted_at = T0 - timedelta(minutes=30)
    db_session.commit()

    assert run_scheduled_publishing_cycle(db_session, lock, now=T0) == 0
    db_session.expire_all()
    assert article.status == ContentStatus.SCHEDULED


def test_cycle_skips_when_another_instance_holds_the_lock(db_session, fake_redis) -> None:
    article = _article(db_session, scheduled_at=T0 - timedelta(minutes=5))
    other_instance = MutexLock(fake_redis)
    this_instance = MutexLock(fake_redis)
    assert other_instance.try_acquire(SCHEDULED_PUBLISHING_LOCK_KEY, "other", 55)

    assert run_scheduled_publishing_cycle(db_session, this_instance, now=T0) == 0
    db_session.expire_all()
    assert article.status == ContentStatus.SCHEDULED

    other_instance.release(SCHEDULED_PUBLISHING_LOCK_KEY, "other")
    assert run_scheduled_publishing_cycle(db_session, this_instance, now=T0) == 1


def test_second_run_finds_nothing_left(db_session, lock, fake_redis) -> None:
    _article(db_session, scheduled_at=T0 - timedelta(minutes=5))
    assert run_scheduled_publishing_cycle(db_session, lock, now=T0) == 1
    assert run_scheduled_publishing_cycle(db_session, lock, now=T0 + timedelta(minutes=1)) == 0
    assert SCHEDULED_PUBLISHING_LOCK_KEY not in fake_redis.store


def test_failure_rolls_back_whole_batch(db_session, lock, fake_redis, monkeypatch) -> None:
    first = _article(db_session, scheduled_at=T0 - timedelta(minutes=2))
    second = _article(db_session, scheduled_at=T0 - timedelta(minutes=1))

    calls = {"count": 0}

    def _failing_write_event(**kwargs):  # noqa: ANN003
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("event store unavailable")

    monkeypatch.setattr(publishing, "write_event", _failing_write_event)

    with pytest.raises(RuntimeError):
        run_scheduled_publishing_cycle(db_session, lock, now=T0)

    db_session.expire_all()
    assert first.status == ContentStatus.SCHEDULED
    assert second.status == ContentStatus.SCHEDULED
    assert SCHEDULED_PUBLISHING_LOCK_KEY not in fake_redis.store


def test_schedule_article_moves_draft_to_scheduled(db_session) -> None:
    article = _article(db_session, status=ContentStatus.DRAFT)
    assert schedule_article(db_session, article.id, T0) is True
    db_session.expire_all()
    assert article.status == ContentStatus.SCHEDULED
    assert article.scheduled_at == T0

    published = _article(db_session, status=ContentStatus.PUBLISHED)
    assert schedule_article(db_session, published.id, T0) is False
