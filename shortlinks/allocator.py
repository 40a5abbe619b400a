"""Short-code allocation, resolution and owner-scoped mutation.

Architecture Overview
=====================
::
    ┌──────────────────────────────────────────────────────────┐
    │                  ShortLinkAllocator                      │
    │  • allocate()   validate → INSERT (unique index decides) │
    │  • resolve()    UPDATE clicks+1 ... RETURNING (atomic)   │
    │  • update()     SELECT ... FOR UPDATE → owner check      │
    │  • delete()     SELECT ... FOR UPDATE → owner check      │
    │  • list_links() paginated read of live records           │
    └───────────────────────────┬──────────────────────────────┘
                                │ fresh session per operation
                                ▼
                     ┌──────────────────────┐
                     │    StoreConnector    │
                     │ (state, engine, TTL) │
                     └──────────────────────┘

Allocation Flow
---------------
::
    ┌─────────────┐
    │ validate URL│──▶ InvalidInputError
    │ code, expiry│
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ connected?  │──▶ StoreUnavailableError (no store call)
    └──────┬──────┘
    custom │ code?
    ┌──────┴──────────────────┐
    │ YES                     │ NO
    ▼                         ▼
┌──────────────┐      ┌──────────────────┐
│ INSERT code  │      │ nanoid(10) INSERT│◀─┐
└──────┬───────┘      └────────┬─────────┘  │ unique violation
  unique violation?            │            │ (max 5 attempts)
       ▼                       └────────────┘
┌──────────────┐
│ holder       │── live ──▶ CodeConflictError
│ expired?     │── expired ─▶ delete holder, INSERT once more
└──────────────┘

Key Behaviours
===============
- The store's unique index is the only authority on code uniqueness; there is
  never a select-then-insert check.
- Click counting is a single UPDATE clicks = clicks + 1 statement, so
  concurrent redirects never lose increments.
- Expired records are invisible to resolve/update/delete/list even before
  the sweeper removes them. An expired custom code may be recycled.
- Records without an owner may be changed by any caller.
- Every store call is bounded by STORE_TIMEOUT_SECONDS.
"""

import asyncio
import datetime
import logging
import re
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import validators
from nanoid import generate
from prometheus_client import Counter, Histogram
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlinks.config import Settings, get_settings
from shortlinks.connector import StoreConnector
from shortlinks.database import utcnow
from shortlinks.enums import RequestStatus, SortField, SortOrder
from shortlinks.exceptions import (
    AllocationExhaustedError,
    CodeConflictError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    ShortLinkError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from shortlinks.models import ShortLink

if TYPE_CHECKING:
    from shortlinks.dependencies import RequestContext

__all__ = [
    "CODE_ALPHABET",
    "MAX_PAGE_SIZE",
    "RESERVED_CODES",
    "ShortLinkAllocator",
    "generate_short_code",
    "validate_custom_code",
    "validate_expiry_days",
    "validate_target_url",
]


# ============================================================================
# CONSTANTS
# ============================================================================

CODE_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
CUSTOM_CODE_PATTERN = re.compile(r"[A-Za-z0-9-]+")
# Path segments already taken by API routes
RESERVED_CODES = frozenset({"urls", "health", "metrics", "docs", "redoc"})
MAX_PAGE_SIZE = 100
MAX_CODE_LENGTH = 20


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

ALLOCATIONS_TOTAL = Counter(
    "shortlinks_allocations_total",
    "Short link allocation requests",
    ["status"],
)
RESOLUTIONS_TOTAL = Counter(
    "shortlinks_resolutions_total",
    "Short link resolution (redirect) requests",
    ["status"],
)
MUTATIONS_TOTAL = Counter(
    "shortlinks_mutations_total",
    "Owner-initiated update and delete requests",
    ["operation", "status"],
)
CODE_COLLISIONS_TOTAL = Counter(
    "shortlinks_code_collisions_total",
    "Unique-index violations hit while inserting generated codes",
)
CODES_RECYCLED_TOTAL = Counter(
    "shortlinks_codes_recycled_total",
    "Expired custom codes handed to a new record",
)
ALLOCATION_DURATION = Histogram(
    "shortlinks_allocation_duration_seconds",
    "Time taken to allocate short links",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

_STATUS_BY_ERROR: dict[type[ShortLinkError], RequestStatus] = {
    InvalidInputError: RequestStatus.VALIDATION_ERROR,
    CodeConflictError: RequestStatus.CONFLICT,
    NotFoundError: RequestStatus.NOT_FOUND,
    ForbiddenError: RequestStatus.FORBIDDEN,
    StoreUnavailableError: RequestStatus.UNAVAILABLE,
    StoreTimeoutError: RequestStatus.UNAVAILABLE,
    AllocationExhaustedError: RequestStatus.UNAVAILABLE,
}


def _request_status(exc: BaseException) -> RequestStatus:
    return _STATUS_BY_ERROR.get(type(exc), RequestStatus.ERROR)


# ============================================================================
# VALIDATION
# ============================================================================


def generate_short_code(length: int) -> str:
    if not isinstance(length, int) or length <= 0:
        raise ValueError(f"length must be a positive integer, got {length!r}")
    return generate(CODE_ALPHABET, length)


def validate_target_url(url: object, settings: Settings) -> str:
    """Check a target URL against the protocol allow-list and length bound.

    Returns:
        str: The URL with surrounding whitespace removed.

    Raises:
        InvalidInputError: If the URL is empty, too long, relative, uses a
            disallowed protocol or is otherwise malformed.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidInputError("originalUrl is required")
    url = url.strip()
    if len(url) > settings.MAX_URL_LENGTH:
        raise InvalidInputError(f"URL must not exceed {settings.MAX_URL_LENGTH} characters")

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if not scheme or not parts.netloc:
        raise InvalidInputError("URL must be absolute")
    if scheme not in settings.ALLOWED_PROTOCOLS:
        allowed = ", ".join(settings.ALLOWED_PROTOCOLS)
        raise InvalidInputError(f"URL protocol '{scheme}' is not allowed (allowed: {allowed})")
    # bare hosts (localhost, intranet names) and valueless query keys are valid targets
    if not validators.url(url, simple_host=True, strict_query=False):
        raise InvalidInputError("Invalid URL format")
    return url


def validate_custom_code(code: object, settings: Settings) -> str:
    if not isinstance(code, str):
        raise InvalidInputError("Custom code must be a string")
    low, high = settings.CUSTOM_CODE_MIN_LENGTH, settings.CUSTOM_CODE_MAX_LENGTH
    if not low <= len(code) <= high:
        raise InvalidInputError(f"Custom code must be between {low} and {high} characters")
    if not CUSTOM_CODE_PATTERN.fullmatch(code):
        raise InvalidInputError("Custom code may only contain letters, digits and hyphens")
    if code.lower() in RESERVED_CODES:
        raise InvalidInputError(f"Custom code '{code}' is reserved")
    return code


def validate_expiry_days(days: object, settings: Settings) -> int:
    if isinstance(days, bool) or not isinstance(days, int):
        raise InvalidInputError("expiresIn must be a whole number of days")
    if not 1 <= days <= settings.MAX_EXPIRY_DAYS:
        raise InvalidInputError(f"expiresIn must be between 1 and {settings.MAX_EXPIRY_DAYS} days")
    return days


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class ShortLinkAllocator:
    """Owns short-code creation, resolution and mutation.

    The allocator holds no connection state of its own; it asks the
    connector for a session on every call and fails fast with
    StoreUnavailableError while the connector is not connected.

    Example:
        >>> allocator = ShortLinkAllocator(connector, settings)
        >>> link = await allocator.allocate("https://example.com", expires_in_days=7)
        >>> (await allocator.resolve(link.code)).target_url
        'https://example.com'
    """

    def __init__(
        self,
        connector: StoreConnector,
        settings: Settings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._connector = connector
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("shortlinks")
        self._clock = clock

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "ShortLinkAllocator":
        """Factory method to create an allocator from a RequestContext."""
        return cls(ctx.connector, ctx.settings, ctx.logger, ctx.clock)

    @property
    def settings(self) -> Settings:
        return self._settings

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def allocate(
        self,
        target_url: str,
        custom_code: str | None = None,
        expires_in_days: int | None = None,
        owner_id: str | None = None,
    ) -> ShortLink:
        """Persist a new short link and return it.

        Args:
            target_url: Absolute http(s) URL to redirect to.
            custom_code: Caller-chosen code; generated when omitted.
            expires_in_days: Lifetime in days, computed from now.
            owner_id: Creating principal, None for anonymous links.

        Returns:
            ShortLink: The persisted record.

        Raises:
            InvalidInputError: URL, code or expiry out of policy.
            CodeConflictError: custom_code is held by a live record.
            AllocationExhaustedError: generated codes kept colliding.
            StoreUnavailableError: the store is not connected.
            StoreTimeoutError: the store did not answer in time.
        """
        start_time = time.perf_counter()
        try:
            target_url = validate_target_url(target_url, self._settings)
            if custom_code is not None:
                custom_code = validate_custom_code(custom_code, self._settings)
            if expires_in_days is not None:
                expires_in_days = validate_expiry_days(expires_in_days, self._settings)
            self._ensure_ready()

            now = self._clock()
            expires_at = now + datetime.timedelta(days=expires_in_days) if expires_in_days else None

            if custom_code is not None:
                link = await self._insert_custom(custom_code, target_url, now, expires_at, owner_id)
            else:
                link = await self._insert_generated(target_url, now, expires_at, owner_id)
        except ShortLinkError as exc:
            ALLOCATIONS_TOTAL.labels(status=_request_status(exc)).inc()
            self._logger.warning(f"Allocation failed: {exc.code} {exc.message}")
            raise
        finally:
            ALLOCATION_DURATION.observe(time.perf_counter() - start_time)

        ALLOCATIONS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Allocated short code {link.code} (owner={owner_id or 'anonymous'})")
        return link

    async def resolve(self, code: str) -> ShortLink:
        """Look up a live code and count one click atomically.

        The returned record carries the post-increment click count; its
        target_url is the redirect target as currently stored.

        Raises:
            NotFoundError: The code is absent or expired.
        """
        try:
            if not code or len(code) > MAX_CODE_LENGTH:
                raise NotFoundError(f"Short link '{code}' not found")
            self._ensure_ready()

            now = self._clock()
            stmt = (
                update(ShortLink)
                .where(ShortLink.code == code, ShortLink.live_at(now))
                .values(clicks=ShortLink.clicks + 1)
                .returning(ShortLink)
                .execution_options(synchronize_session=False)
            )
            async with self._session("resolve") as session:
                result = await session.execute(stmt)
                link = result.scalar_one_or_none()
                await session.commit()

            if link is None:
                raise NotFoundError(f"Short link '{code}' not found")
        except ShortLinkError as exc:
            RESOLUTIONS_TOTAL.labels(status=_request_status(exc)).inc()
            raise

        RESOLUTIONS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.debug(f"Resolved {code} -> {link.target_url} (clicks={link.clicks})")
        return link

    async def describe(self, code: str) -> ShortLink:
        """Return a live record without counting a click."""
        if not code or len(code) > MAX_CODE_LENGTH:
            raise NotFoundError(f"Short link '{code}' not found")
        self._ensure_ready()
        now = self._clock()
        async with self._session("describe") as session:
            result = await session.execute(
                select(ShortLink).where(ShortLink.code == code, ShortLink.live_at(now))
            )
            link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError(f"Short link '{code}' not found")
        return link

    async def update(
        self,
        code: str,
        owner_id: str | None,
        target_url: str | None = None,
        expires_in_days: int | None = None,
    ) -> ShortLink:
        """Change the target and/or expiry of a live record.

        Raises:
            InvalidInputError: Nothing to change, or new values out of policy.
            NotFoundError: The code is absent or expired.
            ForbiddenError: The record belongs to another owner.
        """
        try:
            if target_url is None and expires_in_days is None:
                raise InvalidInputError("Provide originalUrl and/or expiresIn to update")
            if target_url is not None:
                target_url = validate_target_url(target_url, self._settings)
            if expires_in_days is not None:
                expires_in_days = validate_expiry_days(expires_in_days, self._settings)
            self._ensure_ready()

            now = self._clock()
            async with self._session("update") as session:
                link = await self._load_for_change(session, code, owner_id, now)
                if target_url is not None:
                    link.target_url = target_url
                if expires_in_days is not None:
                    link.expires_at = now + datetime.timedelta(days=expires_in_days)
                link.updated_at = now
                await session.commit()
        except ShortLinkError as exc:
            MUTATIONS_TOTAL.labels(operation="update", status=_request_status(exc)).inc()
            raise

        MUTATIONS_TOTAL.labels(operation="update", status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Updated short code {code}")
        return link

    async def delete(self, code: str, owner_id: str | None) -> None:
        """Remove a live record.

        An absent or expired code raises NotFoundError; callers that want
        idempotent deletes treat that as success themselves.
        """
        try:
            self._ensure_ready()
            now = self._clock()
            async with self._session("delete") as session:
                link = await self._load_for_change(session, code, owner_id, now)
                await session.delete(link)
                await session.commit()
        except ShortLinkError as exc:
            MUTATIONS_TOTAL.labels(operation="delete", status=_request_status(exc)).inc()
            raise

        MUTATIONS_TOTAL.labels(operation="delete", status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Deleted short code {code}")

    async def list_links(
        self,
        owner_id: str | None = None,
        page: int = 1,
        page_size: int = 10,
        sort_by: SortField | str = SortField.CREATED_AT,
        sort_order: SortOrder | str = SortOrder.DESC,
    ) -> tuple[list[ShortLink], int]:
        """Return one page of live records and the total number of matches.

        Args:
            owner_id: Restrict to this owner's records when given.
            page: 1-based page number.
            page_size: Records per page, at most MAX_PAGE_SIZE.
            sort_by: createdAt or clicks.
            sort_order: asc or desc.
        """
        if page < 1:
            raise InvalidInputError("page must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        try:
            sort_by = SortField(sort_by)
            sort_order = SortOrder(sort_order)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc
        self._ensure_ready()

        now = self._clock()
        filters = [ShortLink.live_at(now)]
        if owner_id is not None:
            filters.append(ShortLink.owner_id == owner_id)

        column = ShortLink.created_at if sort_by is SortField.CREATED_AT else ShortLink.clicks
        if sort_order is SortOrder.ASC:
            ordering = (column.asc(), ShortLink.id.asc())
        else:
            ordering = (column.desc(), ShortLink.id.desc())

        stmt = select(ShortLink).where(*filters).order_by(*ordering).offset((page - 1) * page_size).limit(page_size)
        count_stmt = select(func.count()).select_from(ShortLink).where(*filters)

        async with self._session("list") as session:
            total = (await session.execute(count_stmt)).scalar_one()
            links = list((await session.scalars(stmt)).all())
        return links, total

    async def purge_expired(self) -> int:
        """Delete records whose expiry has passed; returns how many went."""
        self._ensure_ready()
        now = self._clock()
        stmt = (
            delete(ShortLink)
            .where(ShortLink.expires_at.is_not(None), ShortLink.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        async with self._session("purge") as session:
            result = await session.execute(stmt)
            await session.commit()
        purged = result.rowcount or 0
        if purged:
            self._logger.info(f"Purged {purged} expired short link(s)")
        return purged

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    def _ensure_ready(self) -> None:
        if not self._connector.is_ready():
            raise StoreUnavailableError(f"Store is {self._connector.state.value}, please retry")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session on the current engine under the store timeout.

        Raises:
            StoreUnavailableError: Not connected, or the connection dropped.
            StoreTimeoutError: The block exceeded STORE_TIMEOUT_SECONDS.
        """
        self._ensure_ready()
        timeout = self._settings.STORE_TIMEOUT_SECONDS
        try:
            async with asyncio.timeout(timeout):
                async with self._connector.session() as session:
                    yield session
        except TimeoutError as exc:
            self._logger.warning(f"Store call '{operation}' timed out after {timeout}s")
            raise StoreTimeoutError() from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                self._logger.warning(f"Store connection dropped during '{operation}'")
                self._connector.mark_disconnected(exc)
                raise StoreUnavailableError() from exc
            raise

    async def _insert(
        self,
        code: str,
        target_url: str,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
        owner_id: str | None,
    ) -> ShortLink:
        link = ShortLink(
            code=code,
            target_url=target_url,
            clicks=0,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            owner_id=owner_id,
        )
        async with self._session("allocate") as session:
            session.add(link)
            await session.commit()
        return link

    async def _insert_generated(
        self,
        target_url: str,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
        owner_id: str | None,
    ) -> ShortLink:
        max_attempts = self._settings.CODE_ALLOCATION_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            code = generate_short_code(self._settings.SHORT_CODE_LENGTH)
            try:
                return await self._insert(code, target_url, now, expires_at, owner_id)
            except IntegrityError:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(f"Generated code collision (attempt {attempt}/{max_attempts})")
        raise AllocationExhaustedError()

    async def _insert_custom(
        self,
        code: str,
        target_url: str,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
        owner_id: str | None,
    ) -> ShortLink:
        try:
            return await self._insert(code, target_url, now, expires_at, owner_id)
        except IntegrityError:
            self._logger.debug(f"Custom code {code} already held, checking for an expired holder")

        if await self._purge_expired_code(code, now):
            CODES_RECYCLED_TOTAL.inc()
            self._logger.info(f"Recycling expired custom code {code}")
            try:
                return await self._insert(code, target_url, now, expires_at, owner_id)
            except IntegrityError:
                # another request took the freed code first
                pass
        raise CodeConflictError(f"Custom code '{code}' is already in use")

    async def _purge_expired_code(self, code: str, now: datetime.datetime) -> bool:
        stmt = (
            delete(ShortLink)
            .where(ShortLink.code == code, ShortLink.expires_at.is_not(None), ShortLink.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        async with self._session("recycle") as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)

    async def _load_for_change(
        self,
        session: AsyncSession,
        code: str,
        owner_id: str | None,
        now: datetime.datetime,
    ) -> ShortLink:
        result = await session.execute(
            select(ShortLink).where(ShortLink.code == code, ShortLink.live_at(now)).with_for_update()
        )
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError(f"Short link '{code}' not found")
        if link.owner_id is not None and link.owner_id != owner_id:
            raise ForbiddenError()
        return link
