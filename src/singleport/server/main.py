"""Process-level wiring: listener, hostname discovery, keepalive and share link."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

import structlog

from singleport.core.config import (
    DiscoveryConfig,
    KeepaliveConfig,
    ListenerConfig,
    ShareLinkConfig,
)
from singleport.discovery.cell import HostnameCell
from singleport.discovery.hostname import DiscoveryState, HostnameDiscovery, HostnameSource
from singleport.discovery.keepalive import KeepaliveMonitor
from singleport.links import build_share_link, write_share_link
from singleport.server.listener import MuxServer

logger = structlog.get_logger()

ResolvedHook = Callable[[DiscoveryState, "str | None"], None]


class SingleportServer:
    """Runs the shared listener and, next to it, hostname discovery.

    Keepalive only starts when the hostname was discovered from the tunnel
    agent's log; a fixed hostname or the fallback placeholder never gets
    probed.
    """

    def __init__(
        self,
        listener: ListenerConfig,
        discovery: DiscoveryConfig,
        keepalive: KeepaliveConfig | None = None,
        link: ShareLinkConfig | None = None,
        on_resolved: ResolvedHook | None = None,
    ) -> None:
        self.listener_config = listener
        self.link_config = link
        self.mux = MuxServer(listener)
        self.cell = HostnameCell(scheme=discovery.public_scheme)
        self.discovery = HostnameDiscovery(discovery, self.cell)
        self.keepalive = KeepaliveMonitor(self.cell, keepalive)
        self.share_link: str | None = None
        self._on_resolved = on_resolved
        self._discovery_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start discovery and bind the listener. Bind failures propagate."""
        self._discovery_task = asyncio.create_task(self._discover())
        try:
            await self.mux.start()
        except BaseException:
            await self._cancel_discovery()
            raise

    async def stop(self) -> None:
        await self._cancel_discovery()
        await self.keepalive.stop()
        await self.mux.stop()

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def wait_resolved(self) -> DiscoveryState:
        """Wait until discovery and its follow-up work have finished."""
        if self._discovery_task is not None:
            await asyncio.shield(self._discovery_task)
        return self.discovery.state

    async def _discover(self) -> None:
        state = await self.discovery.resolve()

        if state.source is HostnameSource.DISCOVERED:
            self.keepalive.start()

        if self.link_config is not None and state.hostname:
            self.share_link = build_share_link(
                state.hostname, self.listener_config.upgrade_path, self.link_config
            )
            if self.share_link and self.link_config.link_file:
                try:
                    path = await write_share_link(self.share_link, self.link_config.link_file)
                    logger.info("Share link written", path=str(path))
                except OSError as e:
                    logger.warning("Cannot write share link", path=self.link_config.link_file, error=str(e))

        if self._on_resolved is not None:
            self._on_resolved(state, self.share_link)

    async def _cancel_discovery(self) -> None:
        if self._discovery_task is not None and not self._discovery_task.done():
            self._discovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._discovery_task
        self._discovery_task = None
