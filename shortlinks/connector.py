"""Store connection lifecycle with bounded retry, backoff and reconnection.

The connector is the only owner of the SQLAlchemy engine. Everything else asks
it for a fresh session per operation and never keeps the engine around, so a
reconnect swaps the handle underneath all callers at once.

State Machine
=============
::
    ┌──────────────┐  start()   ┌──────────────┐  handshake ok  ┌──────────────┐
    │ disconnected │ ─────────▶ │  connecting  │ ─────────────▶ │  connected   │
    └──────────────┘            └──────┬───────┘                └──────┬───────┘
                                 fail  │ ▲ retry                       │ disconnect
                            (budget    ▼ │ (backoff sleep)             ▼ (driver event
                             spent)  ┌───┴──────────┐            ┌──────────────┐  or ping)
                                     │    failed    │ ◀───────── │ reconnecting │
                                     └──────────────┘   budget   └──────────────┘
                                        (terminal)      spent      │ ▲ retry
                                                                   └─┘

Backoff
=======
Attempt ``n`` (0-based) that fails waits ``min(base * 2**n, cap)`` seconds
before the next one: 5s, 10s, 20s, 30s, 30s with the defaults. After
``max_retries`` retries the connector enters ``failed``.

How to Use
===========
**Step 1 — Build from settings**::
    connector = StoreConnector.from_settings(settings, on_connect=init_schema)

**Step 2 — Start in the background (FastAPI lifespan)**::
    await connector.start()

**Step 3 — Use per operation**::
    if not connector.is_ready():
        raise StoreUnavailableError()
    async with connector.session() as session:
        ...

**Step 4 — Shutdown**::
    await connector.close()

Key Behaviours
===============
- No request queueing: while not connected, session() raises
  StoreUnavailableError immediately.
- Dropped connections are detected from SQLAlchemy's handle_error event
  (is_disconnect) and from a periodic SELECT 1 monitor.
- Entering failed sets failed_event and calls the registered failure
  listeners; the process is never exited from here.
- sleep and engine_factory are injectable so the state machine can be driven
  by a fake clock in tests.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from prometheus_client import Counter, Gauge
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shortlinks.config import Settings
from shortlinks.enums import ConnectionState
from shortlinks.exceptions import StoreUnavailableError

__all__ = ["StateTransition", "StoreConnector", "backoff_delay", "mask_url"]

STORE_CONNECTION_STATE = Gauge(
    "shortlinks_store_connection_state",
    "1 for the current store connection state, 0 for the others",
    ["state"],
)
STORE_CONNECT_ATTEMPTS_TOTAL = Counter(
    "shortlinks_store_connect_attempts_total",
    "Store connection handshakes by outcome",
    ["outcome"],
)
# Most recent transitions kept for diagnostics
HISTORY_SIZE = 100


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (0-based)."""
    if attempt < 0:
        raise ValueError(f"attempt must be non-negative, got {attempt}")
    return min(base_delay * (2**attempt), max_delay)


def mask_url(url: str) -> str:
    """Render a database URL with its password hidden, safe for logs."""
    return make_url(url).render_as_string(hide_password=True)


@dataclass(frozen=True)
class StateTransition:
    previous: ConnectionState
    current: ConnectionState
    at: float
    reason: str | None = None


FailureListener = Callable[[BaseException | None], None]


class StoreConnector:
    """Owns the store engine and drives its connection state machine."""

    def __init__(
        self,
        database_url: str,
        *,
        max_retries: int = 5,
        base_delay: float = 5.0,
        max_delay: float = 30.0,
        connect_timeout: float = 10.0,
        health_check_interval: float | None = 5.0,
        dns_precheck: bool = True,
        dns_timeout: float = 10.0,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
        engine_options: dict[str, Any] | None = None,
        on_connect: Callable[[AsyncEngine], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        self._database_url = database_url
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._connect_timeout = connect_timeout
        self._health_check_interval = health_check_interval or None
        self._dns_precheck = dns_precheck
        self._dns_timeout = dns_timeout
        self._engine_factory = engine_factory
        self._engine_options = engine_options or {}
        self._on_connect = on_connect
        self._sleep = sleep
        self._logger = logger or logging.getLogger("shortlinks.connector")

        self._state = ConnectionState.DISCONNECTED
        self._history: deque[StateTransition] = deque(maxlen=HISTORY_SIZE)
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._bootstrap_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None
        self._failure_listeners: list[FailureListener] = []
        self._ready_event = asyncio.Event()
        self.failed_event = asyncio.Event()
        self.last_error: BaseException | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "StoreConnector":
        engine_options: dict[str, Any] = {"pool_pre_ping": True}
        if make_url(settings.DATABASE_URL).get_backend_name() != "sqlite":
            engine_options.update(pool_size=20, max_overflow=10)
        kwargs: dict[str, Any] = dict(
            max_retries=settings.STORE_MAX_RETRIES,
            base_delay=settings.STORE_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.STORE_RETRY_MAX_DELAY_SECONDS,
            connect_timeout=settings.STORE_CONNECT_TIMEOUT_SECONDS,
            health_check_interval=settings.STORE_HEALTH_CHECK_INTERVAL_SECONDS,
            dns_precheck=settings.STORE_DNS_PRECHECK,
            engine_options=engine_options,
        )
        kwargs.update(overrides)
        return cls(settings.DATABASE_URL, **kwargs)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        return list(self._history)

    @property
    def masked_url(self) -> str:
        return mask_url(self._database_url)

    def is_ready(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session bound to the current engine.

        Raises:
            StoreUnavailableError: If the connector is not connected.
        """
        sessionmaker = self._sessionmaker
        if not self.is_ready() or sessionmaker is None:
            raise StoreUnavailableError()
        async with sessionmaker() as session:
            yield session

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait until connected; returns False on timeout or terminal failure."""
        ready = asyncio.ensure_future(self._ready_event.wait())
        failed = asyncio.ensure_future(self.failed_event.wait())
        try:
            await asyncio.wait({ready, failed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            failed.cancel()
        return self.is_ready()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin connecting in the background and return immediately."""
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._loop = asyncio.get_running_loop()
        self._transition(ConnectionState.CONNECTING)
        self._bootstrap_task = self._loop.create_task(self._establish())

    async def connect(self) -> bool:
        """Connect in the foreground, retrying with backoff.

        Returns:
            bool: True once connected, False if the retry budget ran out.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise RuntimeError(f"connect() requires state disconnected, got {self._state}")
        self._loop = asyncio.get_running_loop()
        self._transition(ConnectionState.CONNECTING)
        return await self._establish()

    def mark_disconnected(self, exc: BaseException | None = None) -> None:
        """Report a dropped connection observed by a caller."""
        self._handle_disconnect(self._engine, exc)

    async def close(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._bootstrap_task, self._reconnect_task, self._monitor_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._bootstrap_task = self._reconnect_task = self._monitor_task = None

        engine = self._engine
        self._engine = None
        self._sessionmaker = None
        if engine is not None:
            await engine.dispose()
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, reason="closed")
        self._logger.info("Store connector closed")

    # ------------------------------------------------------------------
    # State machine internals
    # ------------------------------------------------------------------

    async def _establish(self) -> bool:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            try:
                engine = await self._handshake()
            except Exception as exc:
                self.last_error = exc
                STORE_CONNECT_ATTEMPTS_TOTAL.labels(outcome="failure").inc()
                if attempt == self._max_retries:
                    break
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                self._logger.warning(
                    f"Store connection attempt {attempt + 1}/{attempts} failed: {exc}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                self._transition(self._state, reason=f"retry {attempt + 1}/{self._max_retries}")
                continue

            STORE_CONNECT_ATTEMPTS_TOTAL.labels(outcome="success").inc()
            self._engine = engine
            self._sessionmaker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            self.last_error = None
            self._transition(ConnectionState.CONNECTED)
            self._start_monitor()
            return True

        self._fail(attempts)
        return False

    async def _handshake(self) -> AsyncEngine:
        if self._dns_precheck:
            await self._precheck_dns()

        engine = self._engine_factory(self._database_url, **self._engine_options)
        try:
            async with asyncio.timeout(self._connect_timeout):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                if self._on_connect is not None:
                    await self._on_connect(engine)
        except BaseException:
            await engine.dispose()
            raise

        def on_error(context: Any) -> None:
            if context.is_disconnect and self._loop is not None:
                self._loop.call_soon_threadsafe(self._handle_disconnect, engine, context.original_exception)

        event.listen(engine.sync_engine, "handle_error", on_error)
        return engine

    async def _precheck_dns(self) -> None:
        host = make_url(self._database_url).host
        if not host:
            return
        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(self._dns_timeout):
                infos = await loop.getaddrinfo(host, None)
        except (OSError, TimeoutError) as exc:
            self._logger.warning(f"DNS pre-check for {host} failed: {exc}; attempting connection anyway")
            return
        self._logger.debug(f"DNS pre-check resolved {host} to {len(infos)} address(es)")

    def _handle_disconnect(self, engine: AsyncEngine | None, exc: BaseException | None) -> None:
        if self._state is not ConnectionState.CONNECTED or engine is None or engine is not self._engine:
            return
        self._logger.warning(f"Store connection lost: {exc or 'disconnect detected'}")
        self.last_error = exc
        self._transition(ConnectionState.RECONNECTING, reason=str(exc) if exc else "disconnect detected")

        monitor = self._monitor_task
        if monitor is not None and not monitor.done() and monitor is not asyncio.current_task():
            monitor.cancel()
        self._monitor_task = None

        self._engine = None
        self._sessionmaker = None
        loop = self._loop or asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect(engine))

    async def _reconnect(self, stale_engine: AsyncEngine) -> bool:
        try:
            await stale_engine.dispose()
        except Exception as exc:
            self._logger.debug(f"Disposing stale engine failed: {exc}")
        return await self._establish()

    def _fail(self, attempts: int) -> None:
        self._transition(ConnectionState.FAILED, reason=str(self.last_error) if self.last_error else None)
        self._logger.critical(
            f"Store connection failed after {attempts} attempt(s) to {self.masked_url}: {self.last_error}"
        )
        self.failed_event.set()
        for listener in self._failure_listeners:
            try:
                listener(self.last_error)
            except Exception:
                self._logger.exception("Store failure listener raised")

    def _start_monitor(self) -> None:
        if self._health_check_interval is None or self._loop is None:
            return
        self._monitor_task = self._loop.create_task(self._monitor())

    async def _monitor(self) -> None:
        while self._state is ConnectionState.CONNECTED:
            await asyncio.sleep(self._health_check_interval)
            engine = self._engine
            if self._state is not ConnectionState.CONNECTED or engine is None:
                return
            try:
                async with asyncio.timeout(self._connect_timeout):
                    async with engine.connect() as conn:
                        await conn.execute(text("SELECT 1"))
            except Exception as exc:
                self._handle_disconnect(engine, exc)
                return

    def _transition(self, new_state: ConnectionState, reason: str | None = None) -> None:
        previous = self._state
        self._state = new_state
        self._history.append(StateTransition(previous, new_state, time.time(), reason))
        for state in ConnectionState:
            STORE_CONNECTION_STATE.labels(state=state.value).set(1 if state is new_state else 0)

        if new_state is ConnectionState.CONNECTED:
            self._ready_event.set()
            self._logger.info(f"Store connection {previous.value} -> connected ({self.masked_url})")
        else:
            self._ready_event.clear()
            self._logger.debug(f"Store connection {previous.value} -> {new_state.value} ({reason})")
