"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, in-memory Redis stand-in,
ASGI test client and seeded users of every role.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "test")

import time  # noqa: E402
import uuid  # noqa: E402
from datetime import date, timedelta  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import config.redis_client as redis_state  # noqa: E402
from config.database import Base, get_db  # noqa: E402
from config.redis_client import get_redis  # noqa: E402
from main import app  # noqa: E402
from shared.models.models import User, UserRole, UserStatus  # noqa: E402
from shared.utils.security import create_access_token, hash_password  # noqa: E402

TEST_PASSWORD = "Password123!"


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the app."""

    def __init__(self):
        self.store: dict = {}
        self.expiry: dict = {}

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.store

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key) if self._alive(key) else None

    async def set(self, key, value, ex=None, nx=False):
        if nx and self._alive(key):
            return None
        self.store[key] = str(value)
        self.expiry.pop(key, None)
        if ex:
            self.expiry[key] = time.monotonic() + ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if self._alive(key))

    async def incr(self, key):
        value = int(self.store[key]) + 1 if self._alive(key) else 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        if not self._alive(key):
            return False
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def ttl(self, key):
        if not self._alive(key):
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - time.monotonic())))

    async def aclose(self):
        return None


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(redis_state, "redis_client", fake)
    return fake


@pytest_asyncio.fixture
async def client(session_factory, redis) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

async def make_user(
    db: AsyncSession,
    role: UserRole,
    email: str = None,
    full_name: str = "Test User",
    is_approved: bool = True,
    status: UserStatus = UserStatus.ACTIVE,
    **profile,
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email or f"{role.value}-{uuid.uuid4().hex[:8]}@alabraar.com",
        password_hash=hash_password(TEST_PASSWORD),
        full_name=full_name,
        role=role,
        status=status,
        is_approved=is_approved,
        **profile,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def student(db: AsyncSession) -> User:
    return await make_user(db, UserRole.STUDENT, email="student@alabraar.com", full_name="Yusuf Student")


@pytest_asyncio.fixture
async def other_student(db: AsyncSession) -> User:
    return await make_user(db, UserRole.STUDENT, email="maryam@alabraar.com", full_name="Maryam Student")


@pytest_asyncio.fixture
async def ustaadh(db: AsyncSession) -> User:
    return await make_user(
        db,
        UserRole.USTAADH,
        email="ustaadh@alabraar.com",
        full_name="Ahmed Al-Hafiz",
        bio="Hafiz with ijazah in Hafs",
        specialties=["Tajweed", "Hifz"],
    )


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, UserRole.ADMIN, email="admin@alabraar.com", full_name="Platform Admin")


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), UserRole(user.role).value, user.email)
    return {"Authorization": f"Bearer {token}"}


def next_weekday(day: int, weeks_ahead: int = 1) -> date:
    """A future date falling on `day` (Sunday = 0), at least a week out."""
    start = date.today() + timedelta(days=7 * weeks_ahead)
    offset = (day - (start.weekday() + 1) % 7) % 7
    return start + timedelta(days=offset)


def past_weekday(day: int, weeks_back: int = 2) -> date:
    return next_weekday(day, weeks_ahead=-weeks_back)


async def set_template(client: AsyncClient, ustaadh: User, slots: list):
    return await client.put("/availability", headers=auth_headers(ustaadh), json=slots)


def booking_payload(ustaadh: User, lessons: list, **overrides) -> dict:
    """Subscription covering every lesson date; lessons are (date, start, end)."""
    dates = [d for d, _, _ in lessons]
    payload = {
        "ustaadhId": str(ustaadh.id),
        "packageType": "basic",
        "hoursPerDay": 1,
        "daysPerWeek": 3,
        "subscriptionMonths": 1,
        "startDate": min(dates).isoformat(),
        "endDate": (max(dates) + timedelta(days=1)).isoformat(),
        "schedule": [
            {"date": d.isoformat(), "startTime": s, "endTime": e} for d, s, e in lessons
        ],
    }
    payload.update(overrides)
    return payload
