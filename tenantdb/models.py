"""Shared dataclasses used across the cache and connection modules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

MAIN_KEY = "main"


class ReadyState(IntEnum):
    """Driver-reported readiness of a tenant handle."""

    DISCONNECTED = 0
    READY = 1
    CONNECTING = 2
    ERRORED = 3


class HandleEvent(str, Enum):
    """Lifecycle notifications pushed by a handle to its listeners."""

    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"


@dataclass(frozen=True, slots=True)
class TenantTarget:
    """Resolved address of one tenant database."""

    key: str
    database: str
    address: str


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Descriptive snapshot of a cached handle."""

    key: str
    ready_state: ReadyState
    host: str | None
    port: int | None
    db_name: str | None
    models: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Outcome of a liveness check for one cached handle."""

    status: str
    ready_state: ReadyState
    host: str | None = None
    port: int | None = None
    db_name: str | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"status": self.status, "readyState": int(self.ready_state)}
        if self.healthy:
            payload.update(host=self.host, port=self.port, dbName=self.db_name)
        else:
            payload["error"] = self.error
        return payload


def resolve_key(tenant_key: str | None) -> str:
    """Map an absent tenant key to the default tenant."""

    return tenant_key or MAIN_KEY


__all__ = [
    "ConnectionInfo",
    "HandleEvent",
    "HealthReport",
    "MAIN_KEY",
    "ReadyState",
    "TenantTarget",
    "resolve_key",
]
