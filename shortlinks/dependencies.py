"""Dependency injection for the short-link API.

A ServiceManager owns the process-wide resources (settings, logger, store
connector, rate limiter, sweeper) and lives on ``app.state``; handlers reach
it through FastAPI dependencies instead of module globals.
"""

import datetime
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from shortlinks.allocator import ShortLinkAllocator
from shortlinks.auth import decode_owner_id
from shortlinks.config import Settings, get_settings
from shortlinks.connector import StoreConnector
from shortlinks.database import init_schema, utcnow
from shortlinks.exceptions import UnauthorizedError
from shortlinks.ratelimit import RateLimiter
from shortlinks.sweeper import ExpiredLinkSweeper

__all__ = [
    "RequestContext",
    "ServiceManager",
    "enforce_rate_limit",
    "get_allocator",
    "get_owner_id",
    "get_request_context",
    "get_service_manager",
    "require_owner_if_configured",
]


# ============================================================================
# SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Holds shared resources created once per application.

    This class manages resources that don't need to be created per request;
    the store connector in particular is the single owner of the engine.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connector: StoreConnector | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        self.connector = connector or StoreConnector.from_settings(self.settings, on_connect=init_schema)
        self.clock = clock
        self.redis_client: redis.Redis | None = None
        self.rate_limiter: RateLimiter | None = None
        self.sweeper: ExpiredLinkSweeper | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Start the store connector and background helpers once at startup."""
        if self._initialized:
            return
        self.connector.add_failure_listener(self._on_store_failed)
        await self.connector.start()

        if self.settings.RATE_LIMIT_ENABLED:
            self.redis_client = await self._setup_redis_client()
            self.rate_limiter = RateLimiter(
                self.redis_client,
                limit=self.settings.RATE_LIMIT_MAX_REQUESTS,
                window_seconds=self.settings.RATE_LIMIT_WINDOW_SECONDS,
                logger=self.logger.getChild("ratelimit"),
            )

        if self.settings.EXPIRED_SWEEP_INTERVAL_SECONDS > 0:
            allocator = ShortLinkAllocator(self.connector, self.settings, self.logger, self.clock)
            self.sweeper = ExpiredLinkSweeper(
                allocator,
                self.settings.EXPIRED_SWEEP_INTERVAL_SECONDS,
                self.logger.getChild("sweeper"),
            )
            self.sweeper.start()

        self._initialized = True
        self.logger.info(f"{self.settings.APP_NAME} started ({self.settings.APP_ENV})")

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("shortlinks")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    async def _setup_redis_client(self) -> redis.Redis:
        """Setup Redis client once."""
        return redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    def _on_store_failed(self, exc: BaseException | None) -> None:
        self.logger.critical(f"Store connection permanently failed, /health now reports unhealthy: {exc}")

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if self.sweeper is not None:
            await self.sweeper.stop()
            self.sweeper = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            self.rate_limiter = None
        await self.connector.close()
        self._initialized = False


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request view of the shared resources plus caller identity.

    Attributes:
        service_manager: Application-wide resources
        owner_id: Verified caller identity, None for anonymous callers
        request_id: Unique identifier for this request
        user_agent: Client user agent string
        client_ip: Client IP address
        start_time: Request start timestamp
    """

    service_manager: ServiceManager
    owner_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @property
    def connector(self) -> StoreConnector:
        return self.service_manager.connector

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def clock(self) -> Callable[[], datetime.datetime]:
        return self.service_manager.clock

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger carrying this request's context."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "owner_id": self.owner_id,
            },
        )

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


def get_service_manager(request: Request) -> ServiceManager:
    return request.app.state.service_manager


def get_owner_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    manager: ServiceManager = Depends(get_service_manager),
) -> str | None:
    """Owner id from a verified bearer token, None when no token was sent."""
    if credentials is None:
        return None
    return decode_owner_id(credentials.credentials, manager.settings)


def require_owner_if_configured(
    owner_id: str | None = Depends(get_owner_id),
    manager: ServiceManager = Depends(get_service_manager),
) -> str | None:
    if manager.settings.AUTH_REQUIRED and owner_id is None:
        raise UnauthorizedError("No token provided")
    return owner_id


def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
    owner_id: str | None = Depends(get_owner_id),
) -> RequestContext:
    return RequestContext(
        service_manager=manager,
        owner_id=owner_id,
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )


async def enforce_rate_limit(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> None:
    if manager.rate_limiter is None:
        return
    identity = request.client.host if request.client else "unknown"
    await manager.rate_limiter.hit(identity)


def get_allocator(ctx: RequestContext = Depends(get_request_context)) -> ShortLinkAllocator:
    return ShortLinkAllocator.from_context(ctx)
