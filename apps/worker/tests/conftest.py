from __future__ import annotations
# ruff: noqa: E402

import sys
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

WORKER_ROOT = Path(__file__).resolve().parents[1]
API_ROOT = Path(__file__).resolve().parents[2] / "api"
REPO_ROOT = Path(__file__).resolve().parents[3]
for root in (WORKER_ROOT, API_ROOT, REPO_ROOT):
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))

from commonhall.models import Base


@pytest.fixture()
def session_factory() -> Generator[Callable[[], Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)
    engine.dispose()
