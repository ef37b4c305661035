"""Process signal wiring that drains a connection cache before exit."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable, Iterable

from .cache import TenantConnectionCache

LOG = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_shutdown_handlers(
    cache: TenantConnectionCache,
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    exit_process: bool = True,
    on_shutdown: Callable[[], None] | None = None,
) -> Callable[[], None]:
    """Drain ``cache`` when one of ``signals`` arrives; returns an uninstall handle.

    With ``exit_process`` set the process terminates with status 0 once every
    connection is closed. ``on_shutdown`` runs after draining either way.
    """

    loop = loop or asyncio.get_running_loop()
    installed = tuple(signals)
    tasks: set[asyncio.Task[None]] = set()

    async def _drain(signame: str) -> None:
        LOG.info("%s received. Closing all DB connections...", signame)
        await cache.shutdown()
        if on_shutdown is not None:
            on_shutdown()
        if exit_process:
            sys.exit(0)

    def _handler(sig: signal.Signals) -> None:
        if tasks:
            return
        task = loop.create_task(_drain(sig.name))
        tasks.add(task)

    for sig in installed:
        loop.add_signal_handler(sig, _handler, sig)

    def _uninstall() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _uninstall


__all__ = ["DEFAULT_SIGNALS", "install_shutdown_handlers"]
