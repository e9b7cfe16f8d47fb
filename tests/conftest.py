"""
Test configuration and fixtures for the rewards engine.

Every test gets its own temporary SQLite database file, so tests never share
state and concurrent-session tests exercise real database locking.
"""

import os
import tempfile
from datetime import datetime, timedelta

from dotenv import load_dotenv

import pytest
import pytest_asyncio

load_dotenv()

test_db_path = tempfile.mktemp(suffix=".db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{test_db_path}"
os.environ["ENVIRONMENT"] = "test"

from app import models  # noqa: E402,F401
from app.engine import RewardsEngine  # noqa: E402
from app.features.referral.schemas.referral import ClickMetadata  # noqa: E402
from app.features.referral.schemas.season import SeasonConfig, SeasonCreate  # noqa: E402
from app.platform.db.base import Base  # noqa: E402
from app.platform.db.session import build_engine, build_session_factory  # noqa: E402


class FakeClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def rewards_engine(session_factory, clock) -> RewardsEngine:
    return RewardsEngine(session_factory, clock=clock)


@pytest.fixture
def make_season(rewards_engine, clock):
    """Create a running season with the given rule overrides."""

    async def _make(slug: str = "spring", is_default: bool = False, **rules):
        return await rewards_engine.create_season(
            SeasonCreate(
                name=slug.title(),
                slug=slug,
                start_date=clock() - timedelta(days=1),
                is_default=is_default,
                config=SeasonConfig(**rules),
            )
        )

    return _make


@pytest.fixture
def refer(rewards_engine):
    """Walk one visitor through click and signup, and optionally conversion."""

    async def _refer(code, user_id: str, conversion_value=None):
        visitor_id = f"visitor-{user_id}"
        await rewards_engine.record_click(code.code, ClickMetadata(visitor_id=visitor_id))
        referral = await rewards_engine.record_signup(code.code, user_id, f"{user_id}@example.com", visitor_id)
        if conversion_value is None:
            return referral
        return await rewards_engine.record_conversion(referral.id, "subscription", conversion_value)

    return _refer
