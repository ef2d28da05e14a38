"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from config.settings import settings
from vibeguard.db.tables import Base, ContentItemRow, UserRow
from vibeguard.db.engine import get_session
import vibeguard.db.moderation_tables  # noqa: F401
from vibeguard.errors import ClassifierError
from vibeguard.models.moderation import Analysis, CategoryScores

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import NullPool, StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"
ADMIN_KEY = "test-admin-key"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from vibeguard.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

import vibeguard.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """File-backed DB with a real connection per session, for concurrency tests.

    The shared in-memory engine funnels every session through one connection,
    so transactions there never actually overlap.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'moderation.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture(autouse=True)
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return ADMIN_KEY


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Seeding ──────────────────────────────────────────────────────────────────

@pytest.fixture
def seed_item():
    """Factory: persist a user (unless ``owner_id`` is given) and one content item."""

    async def _seed(
        *,
        owner_id: Optional[str] = None,
        username: Optional[str] = None,
        banned_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        image_url: str = "https://cdn.example.com/daily/photo.jpg",
    ) -> ContentItemRow:
        async with get_test_session() as session:
            if owner_id is None:
                user = UserRow(
                    username=username or f"user-{uuid.uuid4().hex[:8]}",
                    display_name="Daily Poster",
                    banned_at=banned_at,
                )
                session.add(user)
                await session.flush()
                owner_id = user.id
            item = ContentItemRow(
                owner_id=owner_id,
                image_url=image_url,
                caption="today",
                created_at=created_at or datetime.now(timezone.utc),
            )
            session.add(item)
            await session.commit()
            return item

    return _seed


# ── Classifier fakes ─────────────────────────────────────────────────────────

def make_analysis(overall: float, is_safe: Optional[bool] = None, **categories) -> Analysis:
    return Analysis(
        is_safe=overall < 0.5 if is_safe is None else is_safe,
        overall_confidence=overall,
        categories=CategoryScores(**categories),
        reasoning="test verdict",
        model_version="fake-vision-1",
        processing_time_ms=12,
        raw_response={"overall_confidence": overall, "categories": categories},
    )


class FakeClassifier:
    """Stands in for VisionClassifier: returns (or raises) a canned outcome."""

    model = "fake-vision-1"

    def __init__(self, outcome=None):
        self.outcome = outcome
        self.calls: list[str] = []
        self.closed = False

    async def analyze(self, image_url: str) -> Analysis:
        self.calls.append(image_url)
        if isinstance(self.outcome, ClassifierError):
            raise self.outcome
        return self.outcome

    async def close(self):
        self.closed = True


@pytest.fixture
def verdict():
    return make_analysis


@pytest.fixture
def fake_classifier():
    return FakeClassifier(make_analysis(0.1))


@pytest.fixture
def moderation_engine(fake_classifier):
    from vibeguard.services.moderation import ModerationEngine
    return ModerationEngine(
        fake_classifier, TestSession, auto_reject_threshold=0.9, review_threshold=0.5,
    )


@pytest.fixture
def runner(moderation_engine):
    """An AnalysisRunner wired into the app, as the lifespan would."""
    from vibeguard.services.analysis_tasks import AnalysisRunner
    r = AnalysisRunner(moderation_engine)
    app.state.runner = r
    yield r
    del app.state.runner
