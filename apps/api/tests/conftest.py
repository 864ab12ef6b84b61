from __future__ import annotations
# ruff: noqa: E402

import sys
import uuid
from collections.abc import Callable, Generator
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

API_ROOT = Path(__file__).resolve().parents[1]
WORKER_ROOT = Path(__file__).resolve().parents[2] / "worker"
REPO_ROOT = Path(__file__).resolve().parents[3]
for root in (API_ROOT, WORKER_ROOT, REPO_ROOT):
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))

from commonhall.models import (
    Base,
    EmailNewsletter,
    Journey,
    JourneyChannelType,
    JourneyStep,
    NewsletterStatus,
    User,
)
from commonhall.services.locks import EXTEND_SCRIPT, MutexLock


class FakeRedis:
    """Enough of redis-py for SET NX PX and the compare-and-delete and compare-and-expire scripts."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.eval_calls = 0

    def set(self, key: str, value: str, nx: bool = False, px: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = px
        return True

    def eval(self, script: str, numkeys: int, key: str, token: str, *args: object) -> int:
        self.eval_calls += 1
        if script == EXTEND_SCRIPT:
            if self.store.get(key) != token:
                return 0
            self.ttls[key] = int(args[0])
            return 1
        if self.store.get(key) == token:
            del self.store[key]
            self.ttls.pop(key, None)
            return 1
        return 0


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def lock(fake_redis: FakeRedis) -> MutexLock:
    return MutexLock(fake_redis)


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make(email: str | None = None, full_name: str = "Ada Lovelace", is_active: bool = True) -> User:
        user = User(
            email=email if email is not None else f"user-{uuid.uuid4().hex[:8]}@commonhall.test",
            full_name=full_name,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture()
def make_journey(db_session: Session) -> Callable[..., Journey]:
    def _make(steps: list[dict[str, object]], is_active: bool = True, name: str = "Onboarding") -> Journey:
        journey = Journey(name=name, is_active=is_active)
        for position, step_def in enumerate(steps):
            journey.steps.append(
                JourneyStep(
                    sort_order=position,
                    title=str(step_def.get("title", f"Step {position + 1}")),
                    delay_days=int(step_def.get("delay_days", 0)),
                    is_required=bool(step_def.get("is_required", True)),
                    channel_type=step_def.get("channel_type", JourneyChannelType.APP_NOTIFICATION),
                )
            )
        db_session.add(journey)
        db_session.commit()
        return journey

    return _make


@pytest.fixture()
def make_newsletter(db_session: Session) -> Callable[..., EmailNewsletter]:
    def _make(
        status: NewsletterStatus = NewsletterStatus.DRAFT,
        scheduled_at: datetime | None = None,
        content: str = '<p>Hello</p><a href="https://intranet.example.com/news">Read</a>',
    ) -> EmailNewsletter:
        newsletter = EmailNewsletter(
            title="Monthly update",
            subject="What's new this month",
            preview_text="Highlights",
            content=content,
            status=status,
            scheduled_at=scheduled_at,
        )
        db_session.add(newsletter)
        db_session.commit()
        return newsletter

    return _make
