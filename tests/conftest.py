"""Shared pytest fixtures for allocator, connector and API tests."""

import datetime
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from shortlinks.allocator import ShortLinkAllocator
from shortlinks.config import Settings
from shortlinks.connector import StoreConnector
from shortlinks.database import init_schema
from shortlinks.dependencies import ServiceManager
from shortlinks.main import app


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += datetime.timedelta(**delta)


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        APP_ENV="test",
        BASE_URL="http://test",
        DATABASE_URL=sqlite_url(tmp_path / "shortlinks.db"),
        STORE_HEALTH_CHECK_INTERVAL_SECONDS=0,
        STORE_DNS_PRECHECK=False,
        EXPIRED_SWEEP_INTERVAL_SECONDS=0,
        JWT_SECRET="test-secret-key-for-hs256-signing-0001",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def connector(settings: Settings) -> AsyncGenerator[StoreConnector, None]:
    store = StoreConnector.from_settings(settings, on_connect=init_schema)
    assert await store.connect()
    yield store
    await store.close()


@pytest.fixture
def allocator(connector: StoreConnector, settings: Settings, clock: FakeClock) -> ShortLinkAllocator:
    return ShortLinkAllocator(connector, settings, clock=clock)


@pytest.fixture
def service_manager(settings: Settings, connector: StoreConnector, clock: FakeClock) -> ServiceManager:
    return ServiceManager(settings, connector=connector, clock=clock)


@pytest_asyncio.fixture
async def client(service_manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    previous = app.state.service_manager
    app.state.service_manager = service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.service_manager = previous
