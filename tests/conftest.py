"""Shared test fixtures."""
from datetime import datetime, timedelta
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from contentsync.config import Settings

# Import all models so SQLModel.metadata knows about them
from contentsync.models.content import ContentItem, ContentStatistics, Source  # noqa: F401
from contentsync.models.quota import QuotaUsage  # noqa: F401
from contentsync.models.sync import SyncCycleLog, SyncRecord  # noqa: F401

T0 = datetime(2025, 3, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock pinned to a moment; advance() moves it forward."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Settings that ignore any local .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        page_fetcher_factory="",
        quota_limits={"youtube": 10000, "twitter": 300},
    )


@pytest.fixture(name="seeded_source")
def seeded_source_fixture(test_session: Session) -> Source:
    """A persisted active YouTube source."""
    source = Source(
        id="src-1",
        provider="youtube",
        external_id="UC_channel_1",
        creator_id="creator-1",
        created_at=T0 - timedelta(days=30),
    )
    test_session.add(source)
    test_session.commit()
    test_session.refresh(source)
    return source
