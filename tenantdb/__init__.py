"""Per-tenant database connection cache."""

from __future__ import annotations

from .cache import ConnectionRecord, TenantConnectionCache
from .config import CacheConfig, ConnectionOptions, load_config
from .connections import (
    AsyncpgTenantBackend,
    CacheClosedError,
    ConnectionBackendError,
    DemoTenantBackend,
    HandleNotReadyError,
    TenantBackend,
    TenantConnectionError,
    TenantHandle,
)
from .lifecycle import install_shutdown_handlers
from .models import ConnectionInfo, HandleEvent, HealthReport, ReadyState, TenantTarget

__version__ = "0.1.0"

__all__ = [
    "AsyncpgTenantBackend",
    "CacheClosedError",
    "CacheConfig",
    "ConnectionBackendError",
    "ConnectionInfo",
    "ConnectionOptions",
    "ConnectionRecord",
    "DemoTenantBackend",
    "HandleEvent",
    "HandleNotReadyError",
    "HealthReport",
    "ReadyState",
    "TenantBackend",
    "TenantConnectionCache",
    "TenantConnectionError",
    "TenantHandle",
    "TenantTarget",
    "install_shutdown_handlers",
    "load_config",
]
