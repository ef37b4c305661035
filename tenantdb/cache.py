"""Per-tenant connection cache."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Callable

from .config import CacheConfig
from .connections import (
    AsyncpgTenantBackend,
    CacheClosedError,
    DemoTenantBackend,
    TenantBackend,
    TenantConnectionError,
    TenantHandle,
)
from .models import ConnectionInfo, HandleEvent, HealthReport, ReadyState, resolve_key

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class ConnectionRecord:
    """Cached handle plus the listener wiring it into the cache."""

    key: str
    handle: TenantHandle
    unsubscribe: Callable[[], None]

    @property
    def ready(self) -> bool:
        return self.handle.ready_state == ReadyState.READY


class TenantConnectionCache:
    """Maps tenant keys to lazily opened, readiness-checked connection handles.

    Records are evicted as soon as their handle reports an error or a
    disconnect; the next lookup for that key opens a fresh handle. Concurrent
    first lookups for the same key share a single connection attempt.
    """

    def __init__(self, config: CacheConfig | None = None, *, backend: TenantBackend | None = None) -> None:
        self._config = config or CacheConfig()
        self._backend = backend or _backend_for(self._config)
        self._entries: dict[str, ConnectionRecord] = {}
        self._pending: dict[str, asyncio.Task[TenantHandle]] = {}
        self._retiring: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, tenant_key: object) -> bool:
        return isinstance(tenant_key, str) and tenant_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> tuple[str, ...]:
        return tuple(self._entries)

    async def __aenter__(self) -> TenantConnectionCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def get_connection(self, tenant_key: str | None = None) -> TenantHandle:
        """Return a ready handle for the tenant, opening one on a miss."""

        if self._closed:
            raise CacheClosedError("Connection cache has been shut down.")
        key = resolve_key(tenant_key)
        record = self._entries.get(key)
        if record is not None:
            if record.ready:
                return record.handle
            LOG.debug("Retiring stale connection for %s", key, extra={"tenant_key": key})
            self._evict(key)

        task = self._pending.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._open(key))
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._forget_pending(key, done))
        return await asyncio.shield(task)

    def get_active_connections(self) -> dict[str, TenantHandle]:
        """Snapshot of cached handles that currently report ready."""

        return {key: record.handle for key, record in self._entries.items() if record.ready}

    async def close_connection(self, tenant_key: str | None = None) -> None:
        """Close and forget the tenant's handle; close failures are only logged."""

        key = resolve_key(tenant_key)
        record = self._entries.get(key)
        if record is None:
            return
        try:
            await self._close_record(record)
        finally:
            if self._entries.get(key) is record:
                self._drop(key)

    async def close_all_connections(self) -> None:
        """Close every cached handle concurrently, then clear the cache.

        Connections that finish opening during the drain are closed as well.
        """

        while self._entries or self._pending or self._retiring:
            records = list(self._entries.values())
            await asyncio.gather(
                *(self._close_record(record) for record in records),
                *tuple(self._retiring),
                *tuple(self._pending.values()),
                return_exceptions=True,
            )
            for record in records:
                if self._entries.get(record.key) is record:
                    self._drop(record.key)
        LOG.info("All database connections closed")

    async def health_check(self) -> dict[str, HealthReport]:
        """Ping every cached handle; failures are reported, never evicted."""

        records = list(self._entries.values())
        reports = await asyncio.gather(*(self._check_record(record) for record in records))
        return {record.key: report for record, report in zip(records, reports)}

    def get_connection_info(self, tenant_key: str | None = None) -> ConnectionInfo | None:
        """Describe the cached handle for the tenant, or None when absent."""

        key = resolve_key(tenant_key)
        record = self._entries.get(key)
        if record is None:
            return None
        handle = record.handle
        return ConnectionInfo(
            key=key,
            ready_state=handle.ready_state,
            host=handle.host,
            port=handle.port,
            db_name=handle.name,
            models=tuple(handle.models),
        )

    def notify(
        self,
        tenant_key: str | None,
        event: HandleEvent,
        *,
        handle: TenantHandle | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Apply a readiness change reported by the driver integration layer.

        Errors and disconnects evict the record; when ``handle`` is given the
        eviction only applies if that handle is still the cached one.
        """

        key = resolve_key(tenant_key)
        extra = {"tenant_key": key, "event": event.value}
        if event is HandleEvent.CONNECTED:
            LOG.info("Database connected: %s", key, extra=extra)
            return
        if event is HandleEvent.RECONNECTED:
            LOG.info("Database reconnected: %s", key, extra=extra)
            return
        if event is HandleEvent.ERROR:
            LOG.error("Database error for %s: %s", key, error, extra=extra)
        else:
            LOG.info("Database disconnected: %s", key, extra=extra)
        record = self._entries.get(key)
        if record is None:
            return
        if handle is not None and record.handle is not handle:
            return
        self._evict(key)

    async def shutdown(self) -> None:
        """Refuse new connections and close every cached handle."""

        if self._closed:
            return
        self._closed = True
        await self.close_all_connections()

    async def _open(self, key: str) -> TenantHandle:
        target = self._config.target_for(key)
        try:
            handle = await self._backend.open(target, self._config.options)
        except Exception as exc:
            LOG.error("Failed to connect for %s: %s", key, exc, extra={"tenant_key": key})
            raise TenantConnectionError(key, exc) from exc
        if self._closed:
            await self._close_quietly(key, handle)
            raise CacheClosedError("Connection cache has been shut down.")

        def _listener(source: TenantHandle, event: HandleEvent, error: BaseException | None) -> None:
            self.notify(key, event, handle=source, error=error)

        unsubscribe = handle.subscribe(_listener)
        self._entries[key] = ConnectionRecord(key=key, handle=handle, unsubscribe=unsubscribe)
        LOG.info("Connected to database: %s", target.database, extra={"tenant_key": key})
        return handle

    def _forget_pending(self, key: str, task: asyncio.Task[TenantHandle]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()

    def _drop(self, key: str) -> None:
        record = self._entries.pop(key, None)
        if record is not None:
            record.unsubscribe()

    def _evict(self, key: str) -> None:
        record = self._entries.get(key)
        if record is None:
            return
        self._drop(key)
        task = asyncio.get_running_loop().create_task(self._close_quietly(key, record.handle))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _close_record(self, record: ConnectionRecord) -> None:
        try:
            await record.handle.close()
        except Exception:
            LOG.exception("Error closing connection %s", record.key, extra={"tenant_key": record.key})
        else:
            LOG.info("Closed connection: %s", record.key, extra={"tenant_key": record.key})

    async def _close_quietly(self, key: str, handle: TenantHandle) -> None:
        try:
            await handle.close()
        except Exception:
            LOG.exception("Error closing retired connection %s", key, extra={"tenant_key": key})

    async def _check_record(self, record: ConnectionRecord) -> HealthReport:
        handle = record.handle
        try:
            await handle.ping()
        except Exception as exc:
            LOG.warning("Health check failed for %s: %s", record.key, exc, extra={"tenant_key": record.key})
            return HealthReport(status="unhealthy", ready_state=handle.ready_state, error=str(exc))
        return HealthReport(
            status="healthy",
            ready_state=handle.ready_state,
            host=handle.host,
            port=handle.port,
            db_name=handle.name,
        )


def _backend_for(config: CacheConfig) -> TenantBackend:
    if config.backend == "demo":
        return DemoTenantBackend()
    return AsyncpgTenantBackend()


__all__ = [
    "ConnectionRecord",
    "TenantConnectionCache",
]
