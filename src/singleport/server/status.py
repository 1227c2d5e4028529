"""Minimal HTTP responder for connections classified as plain HTTP.

The listener has already consumed the first bytes of the connection, so the
socket is handed to an aiohttp request handler and those bytes are replayed
into it before anything else is read.
"""

from __future__ import annotations

import asyncio

import structlog
from aiohttp import web

from singleport.observability.metrics import generate_metrics, get_content_type

logger = structlog.get_logger()


class StatusResponder:
    """Answers the health route, optionally metrics, and 404 for everything else."""

    def __init__(self, health_path: str = "/health", metrics_path: str | None = None) -> None:
        self.health_path = health_path
        self.metrics_path = metrics_path
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def started(self) -> bool:
        return self._runner is not None and self._runner.server is not None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        return app

    async def start(self) -> None:
        """Set up the request engine. No socket is bound here."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app, handle_signals=False, access_log=None)
        await self._runner.setup()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._app = None

    def adopt(self, transport: asyncio.Transport, prefix: bytes) -> None:
        """Take over a socket whose first bytes were already read."""
        if self._runner is None or self._runner.server is None:
            raise RuntimeError("StatusResponder.start() must be awaited before adopting connections")
        handler = self._runner.server()
        transport.set_protocol(handler)
        handler.connection_made(transport)
        if prefix:
            handler.data_received(prefix)

    async def _handle_request(self, request: web.Request) -> web.Response:
        # raw_path keeps the query string, so /health?x=1 is not the health route
        target = request.raw_path
        if target == self.health_path:
            return web.Response(body=b"OK", content_type="text/plain")
        if self.metrics_path and target == self.metrics_path:
            return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})
        logger.debug("Unknown status route", method=request.method, path=target)
        return web.Response(status=404)
