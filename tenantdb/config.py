"""Cache configuration loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import MAIN_KEY, TenantTarget, resolve_key

CONFIG_FILE = Path.home() / ".config" / "tenantdb" / "config.toml"

BASE_ADDRESS_ENV = "DATABASE_URI"
MAIN_DB_NAME_ENV = "MAIN_DB_NAME"

DEFAULT_BASE_ADDRESS = "postgresql://<username>:<password>@<cluster-url>"
DEFAULT_MAIN_DB_NAME = "defaultDb"


class ConnectionOptions(BaseModel):
    """Options handed to the driver for every tenant connection."""

    model_config = ConfigDict(frozen=True)

    max_pool_size: int = Field(default=10, ge=1)
    server_selection_timeout: float = Field(default=5.0, gt=0)
    socket_timeout: float = Field(default=45.0, gt=0)
    buffer_commands: bool = False


class CacheConfig(BaseModel):
    """Shape of the cache configuration."""

    model_config = ConfigDict(frozen=True)

    base_address: str = DEFAULT_BASE_ADDRESS
    main_db_name: str = DEFAULT_MAIN_DB_NAME
    backend: Literal["asyncpg", "demo"] = "asyncpg"
    options: ConnectionOptions = Field(default_factory=ConnectionOptions)

    def database_for(self, tenant_key: str | None) -> str:
        """Database name for a tenant; the default tenant uses the main name."""

        key = resolve_key(tenant_key)
        if key == MAIN_KEY:
            return self.main_db_name
        return f"{self.main_db_name}_{key}"

    def address_for(self, tenant_key: str | None) -> str:
        return f"{self.base_address.rstrip('/')}/{self.database_for(tenant_key)}"

    def target_for(self, tenant_key: str | None) -> TenantTarget:
        key = resolve_key(tenant_key)
        return TenantTarget(key=key, database=self.database_for(key), address=self.address_for(key))


def load_config(environ: Mapping[str, str] | None = None) -> CacheConfig:
    """Load configuration from disk and the environment; fall back to defaults."""

    env = os.environ if environ is None else environ
    try:
        data = _read_config_file()
    except (FileNotFoundError, tomllib.TOMLDecodeError, OSError):
        data = {}

    overrides: dict[str, object] = {}
    base_address = env.get(BASE_ADDRESS_ENV)
    if base_address:
        overrides["base_address"] = base_address
    main_db_name = env.get(MAIN_DB_NAME_ENV)
    if main_db_name:
        overrides["main_db_name"] = main_db_name

    try:
        return CacheConfig(**{**data, **overrides})
    except ValidationError:
        return CacheConfig(**overrides)


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for key in ("base_address", "main_db_name", "backend"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    options = raw.get("options")
    if isinstance(options, dict):
        data["options"] = {
            key: options[key]
            for key in ConnectionOptions.model_fields
            if key in options
        }
    return data


__all__ = [
    "BASE_ADDRESS_ENV",
    "CONFIG_FILE",
    "CacheConfig",
    "ConnectionOptions",
    "MAIN_DB_NAME_ENV",
    "load_config",
]
