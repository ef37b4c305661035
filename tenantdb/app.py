"""Command line entry point for tenantdb."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Sequence

from .cache import TenantConnectionCache
from .config import CacheConfig, load_config
from .connections import CacheClosedError, TenantConnectionError
from .lifecycle import install_shutdown_handlers
from .models import MAIN_KEY, HealthReport

LOG = logging.getLogger(__name__)


def _load_cache_config(*, demo: bool) -> CacheConfig:
    """Load configuration, forcing the in-memory backend when requested."""

    config = load_config()
    if demo:
        return config.model_copy(update={"backend": "demo"})
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tenantdb", description="Inspect per-tenant database connections.")
    parser.add_argument("--demo", action="store_true", help="Use the in-memory backend instead of asyncpg.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    check = commands.add_parser("check", help="Connect the tenants once and print their health.")
    check.add_argument("tenants", nargs="*", metavar="TENANT")

    watch = commands.add_parser("watch", help="Repeat the health check until interrupted.")
    watch.add_argument("tenants", nargs="*", metavar="TENANT")
    watch.add_argument("--interval", type=float, default=30.0, help="Seconds between checks (default: 30).")
    return parser


async def connect_tenants(cache: TenantConnectionCache, tenants: Sequence[str]) -> dict[str, str]:
    """Open a connection per tenant; returns connection errors keyed by tenant."""

    failures: dict[str, str] = {}
    for tenant in tenants or (MAIN_KEY,):
        try:
            await cache.get_connection(tenant)
        except TenantConnectionError as exc:
            failures[exc.tenant_key] = str(exc.cause)
        except CacheClosedError:
            break
    return failures


def render_report(reports: dict[str, HealthReport], failures: dict[str, str]) -> str:
    payload: dict[str, object] = {key: report.as_dict() for key, report in sorted(reports.items())}
    for key, message in sorted(failures.items()):
        payload[key] = {"status": "unreachable", "error": message}
    return json.dumps(payload, indent=2)


async def run_check(cache: TenantConnectionCache, tenants: Sequence[str]) -> int:
    async with cache:
        failures = await connect_tenants(cache, tenants)
        reports = await cache.health_check()
    print(render_report(reports, failures))
    if failures or not all(report.healthy for report in reports.values()):
        return 1
    return 0


async def run_watch(cache: TenantConnectionCache, tenants: Sequence[str], interval: float) -> int:
    uninstall = install_shutdown_handlers(cache)
    try:
        while not cache.closed:
            failures = await connect_tenants(cache, tenants)
            reports = await cache.health_check()
            print(render_report(reports, failures), flush=True)
            await asyncio.sleep(interval)
    finally:
        uninstall()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and run the requested command."""

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cache = TenantConnectionCache(_load_cache_config(demo=args.demo))
    LOG.debug("Using %s backend for %s", cache.config.backend, cache.config.base_address)
    if args.command == "watch":
        return asyncio.run(run_watch(cache, args.tenants, args.interval))
    return asyncio.run(run_check(cache, args.tenants))
