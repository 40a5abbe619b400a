"""Rate limiter tests with a mocked Redis client."""

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from shortlinks.config import Settings
from shortlinks.connector import StoreConnector
from shortlinks.dependencies import ServiceManager
from shortlinks.exceptions import RateLimitedError
from shortlinks.ratelimit import RateLimiter


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Mock Redis client."""
    redis_client = AsyncMock(spec=redis.Redis)
    redis_client.incr = AsyncMock(return_value=1)
    redis_client.expire = AsyncMock(return_value=True)
    return redis_client


def test_key_is_scoped_to_window(mock_redis: AsyncMock) -> None:
    limiter = RateLimiter(mock_redis, limit=10, window_seconds=900, clock=lambda: 1800.0)
    assert limiter.key_for("10.0.0.1") == "ratelimit:10.0.0.1:2"


def test_rejects_non_positive_limits(mock_redis: AsyncMock) -> None:
    with pytest.raises(ValueError):
        RateLimiter(mock_redis, limit=0, window_seconds=900)


@pytest.mark.asyncio
async def test_first_hit_sets_expiry(mock_redis: AsyncMock) -> None:
    limiter = RateLimiter(mock_redis, limit=10, window_seconds=900, clock=lambda: 0.0)

    assert await limiter.hit("10.0.0.1") == 1

    mock_redis.incr.assert_awaited_once_with("ratelimit:10.0.0.1:0")
    mock_redis.expire.assert_awaited_once_with("ratelimit:10.0.0.1:0", 900)


@pytest.mark.asyncio
async def test_later_hits_keep_expiry(mock_redis: AsyncMock) -> None:
    mock_redis.incr.return_value = 5
    limiter = RateLimiter(mock_redis, limit=10, window_seconds=900)

    assert await limiter.hit("10.0.0.1") == 5
    mock_redis.expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_over_limit_raises(mock_redis: AsyncMock) -> None:
    mock_redis.incr.return_value = 11
    limiter = RateLimiter(mock_redis, limit=10, window_seconds=900)

    with pytest.raises(RateLimitedError):
        await limiter.hit("10.0.0.1")


@pytest.mark.asyncio
async def test_redis_outage_fails_open(mock_redis: AsyncMock) -> None:
    mock_redis.incr.side_effect = RedisConnectionError("redis down")
    limiter = RateLimiter(mock_redis, limit=10, window_seconds=900)

    assert await limiter.hit("10.0.0.1") == 0


@pytest.mark.asyncio
async def test_api_returns_429(client: AsyncClient, service_manager, mock_redis: AsyncMock) -> None:
    mock_redis.incr.return_value = 2
    service_manager.rate_limiter = RateLimiter(mock_redis, limit=1, window_seconds=900)

    response = await client.post("/urls", json={"originalUrl": "https://example.com"})
    assert response.status_code == 429
    assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"

    # redirects are not rate limited
    assert (await client.get("/missing", follow_redirects=False)).status_code == 404


@pytest.mark.asyncio
async def test_redis_client_lifecycle(
    settings: Settings, connector: StoreConnector, mock_redis: AsyncMock, monkeypatch
) -> None:
    settings = settings.model_copy(update={"RATE_LIMIT_ENABLED": True, "EXPIRED_SWEEP_INTERVAL_SECONDS": 0})
    manager = ServiceManager(settings, connector=connector)
    monkeypatch.setattr(manager, "_setup_redis_client", AsyncMock(return_value=mock_redis))

    await manager.initialize()
    assert manager.redis_client is mock_redis
    assert manager.rate_limiter is not None

    await manager.cleanup()
    mock_redis.aclose.assert_awaited_once()
    assert manager.redis_client is None
    assert manager.rate_limiter is None
