"""Tenant connection handles and the backends that open them."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Callable, Protocol, runtime_checkable
from urllib.parse import urlsplit

import asyncpg

from .config import ConnectionOptions
from .models import HandleEvent, ReadyState, TenantTarget

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 5432


class ConnectionBackendError(RuntimeError):
    """Raised when a backend cannot open or use a tenant connection."""


class TenantConnectionError(ConnectionBackendError):
    """Raised to callers when a tenant connection cannot be established."""

    def __init__(self, tenant_key: str, cause: BaseException) -> None:
        super().__init__(f"Database connection failed for '{tenant_key}': {cause}")
        self.tenant_key = tenant_key
        self.cause = cause


class CacheClosedError(ConnectionBackendError):
    """Raised when a connection is requested from a cache that was shut down."""


class HandleNotReadyError(ConnectionBackendError):
    """Raised when a command is issued before the handle is ready and buffering is off."""


HandleListener = Callable[["TenantHandle", HandleEvent, "BaseException | None"], None]


@runtime_checkable
class TenantHandle(Protocol):
    """Protocol implemented by live tenant connections."""

    @property
    def ready_state(self) -> ReadyState: ...

    @property
    def host(self) -> str | None: ...

    @property
    def port(self) -> int | None: ...

    @property
    def name(self) -> str: ...

    @property
    def models(self) -> tuple[str, ...]: ...

    async def close(self) -> None:
        """Gracefully close the underlying connection(s)."""

    async def ping(self) -> None:
        """Round-trip a liveness check; raises on failure."""

    def subscribe(self, listener: HandleListener) -> Callable[[], None]:
        """Subscribe to lifecycle events; returns an unsubscribe handle."""


@runtime_checkable
class TenantBackend(Protocol):
    """Protocol implemented by connection backends."""

    async def open(self, target: TenantTarget, options: ConnectionOptions) -> TenantHandle:
        """Establish a handle for the target; raises ConnectionBackendError."""


class _BaseHandle:
    """Listener bookkeeping and readiness tracking shared by the handles."""

    def __init__(self, target: TenantTarget, options: ConnectionOptions) -> None:
        self._target = target
        self._options = options
        self._state = ReadyState.CONNECTING
        self._ready = asyncio.Event()
        self._listeners: set[HandleListener] = set()
        self._models: dict[str, Any] = {}

    @property
    def ready_state(self) -> ReadyState:
        return self._state

    @property
    def name(self) -> str:
        return self._target.database

    @property
    def target(self) -> TenantTarget:
        return self._target

    @property
    def models(self) -> tuple[str, ...]:
        return tuple(sorted(self._models))

    def register_model(self, name: str, model: Any = None) -> None:
        """Record a data-model name against this handle."""

        self._models[name] = model

    def subscribe(self, listener: HandleListener) -> Callable[[], None]:
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _transition(self, event: HandleEvent, error: BaseException | None = None) -> None:
        if event in (HandleEvent.CONNECTED, HandleEvent.RECONNECTED):
            self._state = ReadyState.READY
            self._ready.set()
        else:
            self._state = ReadyState.ERRORED if event is HandleEvent.ERROR else ReadyState.DISCONNECTED
            self._ready.clear()
        for listener in tuple(self._listeners):
            listener(self, event, error)

    async def _wait_ready(self) -> None:
        if self._state is not ReadyState.CONNECTING:
            return
        if not self._options.buffer_commands:
            raise HandleNotReadyError(f"Connection to '{self.name}' is not ready yet.")
        await asyncio.wait_for(self._ready.wait(), timeout=self._options.server_selection_timeout)


class AsyncpgTenantHandle(_BaseHandle):
    """Tenant handle backed by an asyncpg connection pool."""

    def __init__(self, target: TenantTarget, options: ConnectionOptions) -> None:
        super().__init__(target, options)
        parts = urlsplit(target.address)
        self._host = parts.hostname
        try:
            self._port = parts.port or DEFAULT_PORT
        except ValueError:
            self._port = None
        self._pool: asyncpg.Pool | None = None
        self._closing = False
        self._live_connections = 0

    @property
    def host(self) -> str | None:
        return self._host

    @property
    def port(self) -> int | None:
        return self._port

    async def start(self) -> None:
        """Create the pool; the first connection is established eagerly."""

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self._target.address,
                min_size=1,
                max_size=self._options.max_pool_size,
                timeout=self._options.server_selection_timeout,
                command_timeout=self._options.socket_timeout,
                max_inactive_connection_lifetime=0,
                init=self._init_connection,
            )
        except Exception:
            self._state = ReadyState.ERRORED
            raise
        self._transition(HandleEvent.CONNECTED)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a pooled connection; connection failures are reported as errors."""

        await self._wait_ready()
        pool = self._require_pool()
        try:
            connection = await pool.acquire()
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            LOG.warning("Pool acquire failed for %s", self.name, extra={"tenant_key": self._target.key})
            self._transition(HandleEvent.ERROR, exc)
            raise
        try:
            yield connection
        finally:
            await pool.release(connection)

    async def ping(self) -> None:
        await self._wait_ready()
        await self._require_pool().fetchval("SELECT 1")

    async def close(self) -> None:
        self._closing = True
        pool = self._pool
        if pool is None:
            return
        try:
            await asyncio.wait_for(pool.close(), timeout=self._options.socket_timeout)
        except asyncio.TimeoutError:
            pool.terminate()
            raise
        finally:
            self._state = ReadyState.DISCONNECTED
            self._ready.clear()

    async def _init_connection(self, connection: asyncpg.Connection) -> None:
        connection.add_termination_listener(self._on_terminated)
        self._live_connections += 1
        if self._state is ReadyState.DISCONNECTED and not self._closing:
            self._transition(HandleEvent.RECONNECTED)

    def _on_terminated(self, connection: asyncpg.Connection) -> None:
        self._live_connections = max(self._live_connections - 1, 0)
        # Only an empty pool counts as down.
        if self._closing or self._live_connections or self._state is ReadyState.DISCONNECTED:
            return
        self._transition(HandleEvent.DISCONNECTED)

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise HandleNotReadyError(f"Connection to '{self.name}' was never opened.")
        return self._pool


class AsyncpgTenantBackend:
    """Connection backend that opens one asyncpg pool per tenant database."""

    async def open(self, target: TenantTarget, options: ConnectionOptions) -> AsyncpgTenantHandle:
        handle = AsyncpgTenantHandle(target, options)
        try:
            await handle.start()
        except Exception as exc:
            raise ConnectionBackendError(f"Failed to connect to database '{target.database}': {exc}") from exc
        return handle


class DemoTenantHandle(_BaseHandle):
    """In-memory handle whose lifecycle is driven by tests or the demo CLI."""

    def __init__(
        self,
        target: TenantTarget,
        options: ConnectionOptions,
        *,
        host: str = "localhost",
        port: int = DEFAULT_PORT,
    ) -> None:
        super().__init__(target, options)
        self._host = host
        self._port = port
        self.ping_error: BaseException | None = None
        self.close_error: BaseException | None = None
        self.close_calls = 0

    @property
    def host(self) -> str | None:
        return self._host

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def closed(self) -> bool:
        return self.close_calls > 0 and self._state is ReadyState.DISCONNECTED

    def emit(self, event: HandleEvent, error: BaseException | None = None) -> None:
        """Push a lifecycle event to listeners (testing helper)."""

        self._transition(event, error)

    def mark_connecting(self) -> None:
        self._state = ReadyState.CONNECTING
        self._ready.clear()

    async def ping(self) -> None:
        await self._wait_ready()
        if self.ping_error is not None:
            raise self.ping_error

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error
        self._state = ReadyState.DISCONNECTED
        self._ready.clear()


class DemoTenantBackend:
    """Stub backend that hands out in-memory handles."""

    def __init__(self, *, delay: float = 0.0, host: str = "localhost", port: int = DEFAULT_PORT) -> None:
        self._delay = delay
        self._host = host
        self._port = port
        self._failures: dict[str, BaseException] = {}
        self.opened: list[TenantTarget] = []
        self.handles: dict[str, list[DemoTenantHandle]] = {}

    async def open(self, target: TenantTarget, options: ConnectionOptions) -> DemoTenantHandle:
        self.opened.append(target)
        await asyncio.sleep(self._delay)
        error = self._failures.pop(target.key, None)
        if error is not None:
            raise ConnectionBackendError(f"Failed to connect to database '{target.database}': {error}") from error
        handle = DemoTenantHandle(target, options, host=self._host, port=self._port)
        handle.emit(HandleEvent.CONNECTED)
        self.handles.setdefault(target.key, []).append(handle)
        return handle

    def fail_next(self, key: str, error: BaseException | None = None) -> None:
        """Make the next open for the key fail (testing helper)."""

        self._failures[key] = error or OSError("connection refused")

    def latest(self, key: str) -> DemoTenantHandle:
        return self.handles[key][-1]


__all__ = [
    "AsyncpgTenantBackend",
    "AsyncpgTenantHandle",
    "CacheClosedError",
    "ConnectionBackendError",
    "DemoTenantBackend",
    "DemoTenantHandle",
    "HandleListener",
    "HandleNotReadyError",
    "TenantBackend",
    "TenantConnectionError",
    "TenantHandle",
]
