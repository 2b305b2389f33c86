"""
Shared fixtures.

The suite runs against a throwaway SQLite file (aiosqlite) so it needs no
PostgreSQL, Redis or Socket.IO. Settings are read once at import time, so
the environment is set before anything from ``lifeline`` is imported.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="lifeline-tests-")
_DB_PATH = os.path.join(_DB_DIR, "test.db")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_DB_PATH}"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["JWT_SECRET"] = "test-secret"

import asyncio  # noqa: E402
from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import lifeline.models  # noqa: E402,F401
from lifeline.db.postgres import Base, get_db  # noqa: E402
from lifeline.main import app  # noqa: E402
from lifeline.api.middleware.auth import create_access_token  # noqa: E402
from lifeline.api.middleware.rate_limit import SlidingWindowRateLimiter, set_rate_limiter  # noqa: E402
from lifeline.services.emergency_policy import haversine_distance  # noqa: E402
from lifeline.services.location_service import NearbyHelper, get_geo_index  # noqa: E402
from lifeline.services.notification_service import get_notifier  # noqa: E402


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

class FakeGeoIndex:
    """In-memory GeoIndex: helpers are registered with a position."""

    def __init__(self):
        self.helpers: dict[str, tuple[float, float]] = {}
        self.calls: list[dict] = []

    def add(self, helper_id: str, longitude: float, latitude: float):
        self.helpers[helper_id] = (longitude, latitude)

    async def find_nearby_helpers(self, point, radius_m, exclude_ids, limit):
        self.calls.append({"point": point, "radius_m": radius_m, "exclude_ids": list(exclude_ids), "limit": limit})
        found = []
        for helper_id, position in self.helpers.items():
            if helper_id in exclude_ids:
                continue
            distance = haversine_distance(point, position)
            if distance <= radius_m:
                found.append(NearbyHelper(helper_id, position[0], position[1], distance))
        found.sort(key=lambda h: h.distance_m)
        return found[:limit]


class FailingGeoIndex:
    async def find_nearby_helpers(self, point, radius_m, exclude_ids, limit):
        raise RuntimeError("geo index unavailable")


class SlowGeoIndex:
    def __init__(self, delay: float):
        self.delay = delay

    async def find_nearby_helpers(self, point, radius_m, exclude_ids, limit):
        await asyncio.sleep(self.delay)
        return []


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    async def notify(self, recipient_id, event_kind, payload):
        self.sent.append((recipient_id, event_kind, payload))
        return True

    def kinds_for(self, recipient_id):
        return [kind for rid, kind, _ in self.sent if rid == recipient_id]


class FailingNotifier:
    async def notify(self, recipient_id, event_kind, payload):
        raise ConnectionError("socket bus down")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _schema():
    """Fresh tables for every test."""
    engine = create_engine(f"sqlite:///{_DB_PATH}")
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def geo_index():
    return FakeGeoIndex()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rate_limiter():
    limiter = SlidingWindowRateLimiter(backend="memory")
    set_rate_limiter(limiter)
    yield limiter
    set_rate_limiter(None)


# ---------------------------------------------------------------------------
# Drafts / auth
# ---------------------------------------------------------------------------

# Gaza City centre, (lon, lat)
ORIGIN = (34.4668, 31.5017)


@pytest.fixture
def make_draft():
    def _make(**overrides):
        draft = {
            "type": "medical",
            "title": "Collapsed on the street",
            "description": "Elderly man collapsed and is not responding",
            "location": {
                "coordinates": list(ORIGIN),
                "address": "Omar Al-Mukhtar St",
                "city": "Gaza",
                "accuracy": 12.0,
            },
        }
        draft.update(overrides)
        return draft
    return _make


def token_headers(user_id: str, role: str = "user") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return token_headers


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def client(session_factory, geo_index, notifier, rate_limiter):
    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_geo_index] = lambda: geo_index
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def t0():
    return datetime(2026, 3, 1, 12, 0, 0)
