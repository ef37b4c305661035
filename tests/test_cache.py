"""Tests for the tenant connection cache."""

from __future__ import annotations

import asyncio

import pytest

from tenantdb.cache import TenantConnectionCache
from tenantdb.config import CacheConfig
from tenantdb.connections import CacheClosedError, DemoTenantBackend, TenantConnectionError
from tenantdb.models import HandleEvent, ReadyState


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def backend() -> DemoTenantBackend:
    return DemoTenantBackend()


@pytest.fixture
def cache(backend: DemoTenantBackend) -> TenantConnectionCache:
    config = CacheConfig(base_address="mongodb+srv://cluster", main_db_name="app")
    return TenantConnectionCache(config, backend=backend)


@pytest.mark.anyio
async def test_tenant_and_main_addresses(cache: TenantConnectionCache, backend: DemoTenantBackend) -> None:
    await cache.get_connection("t1")
    await cache.get_connection(None)

    assert [target.address for target in backend.opened] == [
        "mongodb+srv://cluster/app_t1",
        "mongodb+srv://cluster/app",
    ]
    assert set(cache.keys()) == {"t1", "main"}


@pytest.mark.anyio
async def test_repeat_lookup_returns_cached_handle(cache: TenantConnectionCache, backend: DemoTenantBackend) -> None:
    first = await cache.get_connection("t1")
    second = await cache.get_connection("t1")

    assert first is second
    assert len(backend.opened) == 1


@pytest.mark.anyio
async def test_concurrent_first_lookups_share_one_attempt() -> None:
    backend = DemoTenantBackend(delay=0.01)
    cache = TenantConnectionCache(CacheConfig(), backend=backend)

    handles = await asyncio.gather(*(cache.get_connection("t1") for _ in range(5)))

    assert len(backend.opened) == 1
    assert all(handle is handles[0] for handle in handles)


@pytest.mark.anyio
async def test_concurrent_failure_reaches_every_waiter() -> None:
    backend = DemoTenantBackend(delay=0.01)
    backend.fail_next("t1")
    cache = TenantConnectionCache(CacheConfig(), backend=backend)

    results = await asyncio.gather(
        cache.get_connection("t1"),
        cache.get_connection("t1"),
        return_exceptions=True,
    )

    assert len(backend.opened) == 1
    assert all(isinstance(result, TenantConnectionError) for result in results)
    assert "t1" not in cache


@pytest.mark.anyio
async def test_failed_connect_raises_and_caches_nothing(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    backend.fail_next("t1", OSError("refused"))

    with pytest.raises(TenantConnectionError) as excinfo:
        await cache.get_connection("t1")

    assert excinfo.value.tenant_key == "t1"
    assert "refused" in str(excinfo.value.cause)
    assert "t1" not in cache
    await cache.get_connection("t1")
    assert len(backend.opened) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("event", [HandleEvent.ERROR, HandleEvent.DISCONNECTED])
async def test_lifecycle_failure_evicts_and_reconnects_lazily(
    cache: TenantConnectionCache, backend: DemoTenantBackend, event: HandleEvent
) -> None:
    first = await cache.get_connection("t1")

    backend.latest("t1").emit(event, RuntimeError("socket closed") if event is HandleEvent.ERROR else None)

    assert "t1" not in cache.get_active_connections()
    assert "t1" not in cache
    second = await cache.get_connection("t1")
    assert second is not first
    assert len(backend.opened) == 2


@pytest.mark.anyio
async def test_informational_events_keep_record(cache: TenantConnectionCache, backend: DemoTenantBackend) -> None:
    handle = await cache.get_connection("t1")

    backend.latest("t1").emit(HandleEvent.CONNECTED)
    backend.latest("t1").emit(HandleEvent.RECONNECTED)

    assert cache.get_active_connections() == {"t1": handle}


@pytest.mark.anyio
async def test_stale_handle_notifications_do_not_evict_replacement(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    old = await cache.get_connection("t1")
    backend.latest("t1").mark_connecting()
    replacement = await cache.get_connection("t1")

    cache.notify("t1", HandleEvent.DISCONNECTED, handle=old)

    assert replacement is not old
    assert cache.get_active_connections() == {"t1": replacement}


@pytest.mark.anyio
async def test_not_ready_entry_is_replaced_and_retired(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    await cache.get_connection("t1")
    stale = backend.latest("t1")
    stale.mark_connecting()

    replacement = await cache.get_connection("t1")
    await cache.close_all_connections()

    assert replacement is not stale
    assert stale.close_calls == 1
    assert backend.latest("t1").close_calls == 1
    assert len(backend.opened) == 2


@pytest.mark.anyio
async def test_evicted_handle_is_closed_once(cache: TenantConnectionCache, backend: DemoTenantBackend) -> None:
    await cache.get_connection("t1")
    evicted = backend.latest("t1")

    evicted.emit(HandleEvent.DISCONNECTED)
    await cache.close_all_connections()

    assert "t1" not in cache
    assert evicted.close_calls == 1


@pytest.mark.anyio
async def test_close_all_closes_connections_opened_during_drain() -> None:
    backend = DemoTenantBackend(delay=0.01)
    cache = TenantConnectionCache(CacheConfig(), backend=backend)
    await cache.get_connection("t1")

    opening = asyncio.ensure_future(cache.get_connection("t2"))
    await asyncio.sleep(0)
    await cache.close_all_connections()

    assert len(cache) == 0
    handle = await opening
    assert handle is backend.latest("t2")
    assert backend.latest("t1").close_calls == 1
    assert backend.latest("t2").close_calls == 1


@pytest.mark.anyio
async def test_active_connections_only_lists_ready_handles(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    ready = await cache.get_connection("t1")
    await cache.get_connection("t2")
    backend.latest("t2").mark_connecting()

    active = cache.get_active_connections()
    active.clear()

    assert cache.get_active_connections() == {"t1": ready}
    assert "t2" in cache


@pytest.mark.anyio
async def test_close_connection_on_missing_key_is_noop(cache: TenantConnectionCache) -> None:
    await cache.close_connection("ghost")

    assert len(cache) == 0


@pytest.mark.anyio
async def test_close_connection_removes_entry_even_when_close_fails(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    await cache.get_connection("t1")
    backend.latest("t1").close_error = RuntimeError("close failed")

    await cache.close_connection("t1")

    assert backend.latest("t1").close_calls == 1
    assert "t1" not in cache


@pytest.mark.anyio
async def test_close_all_clears_cache_despite_failures(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    for tenant in ("t1", "t2", "t3"):
        await cache.get_connection(tenant)
    backend.latest("t2").close_error = RuntimeError("close failed")

    await cache.close_all_connections()

    assert cache.get_active_connections() == {}
    assert len(cache) == 0
    assert all(backend.latest(tenant).close_calls == 1 for tenant in ("t1", "t2", "t3"))
    assert backend.latest("t1").closed is True


@pytest.mark.anyio
async def test_health_check_reports_without_evicting(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    await cache.get_connection("t1")
    await cache.get_connection(None)
    backend.latest("t1").ping_error = RuntimeError("ping timed out")

    reports = await cache.health_check()

    assert reports["t1"].status == "unhealthy"
    assert reports["t1"].error == "ping timed out"
    assert reports["t1"].ready_state is ReadyState.READY
    assert reports["main"].healthy
    assert reports["main"].db_name == "app"
    assert reports["main"].host == "localhost"
    assert reports["main"].port == 5432
    assert set(cache.keys()) == {"t1", "main"}


@pytest.mark.anyio
async def test_connection_info_describes_cached_handle(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    handle = await cache.get_connection("t1")
    backend.latest("t1").register_model("invoices")

    info = cache.get_connection_info("t1")

    assert info is not None
    assert info.key == "t1"
    assert info.ready_state is ReadyState.READY
    assert info.db_name == "app_t1"
    assert info.host == handle.host
    assert info.models == ("invoices",)


def test_connection_info_for_missing_key_is_none(cache: TenantConnectionCache, backend: DemoTenantBackend) -> None:
    assert cache.get_connection_info("ghost") is None
    assert cache.get_connection_info() is None
    assert backend.opened == []


@pytest.mark.anyio
async def test_shutdown_closes_everything_and_refuses_new_connections(
    cache: TenantConnectionCache, backend: DemoTenantBackend
) -> None:
    await cache.get_connection("t1")

    await cache.shutdown()
    await cache.shutdown()

    assert cache.closed is True
    assert backend.latest("t1").close_calls == 1
    with pytest.raises(CacheClosedError):
        await cache.get_connection("t1")


@pytest.mark.anyio
async def test_connection_finishing_after_shutdown_is_closed() -> None:
    backend = DemoTenantBackend(delay=0.01)
    cache = TenantConnectionCache(CacheConfig(), backend=backend)

    pending = asyncio.ensure_future(cache.get_connection("t1"))
    await asyncio.sleep(0)
    await cache.shutdown()

    with pytest.raises(CacheClosedError):
        await pending
    assert backend.latest("t1").close_calls == 1
    assert len(cache) == 0


@pytest.mark.anyio
async def test_context_manager_shuts_down(backend: DemoTenantBackend) -> None:
    async with TenantConnectionCache(CacheConfig(), backend=backend) as cache:
        await cache.get_connection("t1")

    assert cache.closed is True
    assert backend.latest("t1").close_calls == 1


def test_default_backend_follows_config() -> None:
    cache = TenantConnectionCache(CacheConfig(backend="demo"))

    assert isinstance(cache._backend, DemoTenantBackend)
