"""
tests/test_rate_limit.py
Tests for the per-IP fixed window rate limiter.
"""

import pytest
from httpx import AsyncClient

from config.settings import settings


@pytest.fixture
def tight_limit(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_MAX_REQUESTS", 3)
    monkeypatch.setattr(settings, "RATE_LIMIT_WINDOW_SECONDS", 60)


@pytest.mark.asyncio
async def test_headers_count_down(client: AsyncClient, tight_limit):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "3"
    assert response.headers["X-RateLimit-Remaining"] == "2"
    assert 0 < int(response.headers["X-RateLimit-Reset"]) <= 60

    response = await client.get("/")
    assert response.headers["X-RateLimit-Remaining"] == "1"


@pytest.mark.asyncio
async def test_over_limit_returns_429(client: AsyncClient, tight_limit):
    for _ in range(3):
        assert (await client.get("/")).status_code == 200

    response = await client.get("/")
    assert response.status_code == 429
    data = response.json()
    assert data["detail"] == "Too many requests. Please try again later."
    assert 0 < data["retryAfter"] <= 60
    assert response.headers["Retry-After"] == str(data["retryAfter"])
    assert response.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_window_is_shared_across_paths(client: AsyncClient, tight_limit):
    await client.get("/")
    await client.get("/users/ustaadhs")
    await client.get("/auth/me")
    response = await client.get("/users/ustaadhs")
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_health_is_not_limited(client: AsyncClient, tight_limit):
    for _ in range(5):
        response = await client.get("/health")
        assert response.status_code != 429
        assert "X-RateLimit-Limit" not in response.headers


@pytest.mark.asyncio
async def test_disabled_limiter_passes_through(client: AsyncClient, tight_limit, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    for _ in range(5):
        response = await client.get("/")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


@pytest.mark.asyncio
async def test_fails_open_when_redis_errors(client: AsyncClient, redis, tight_limit, monkeypatch):
    async def broken_incr(key):
        raise ConnectionError("redis down")

    monkeypatch.setattr(redis, "incr", broken_incr)
    for _ in range(5):
        response = await client.get("/")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
