"""Keepalive probes against the public hostname.

The public hostname fronts this very process, so a successful probe means
the whole path (edge -> tunnel agent -> listener -> status responder) works.
Only transitions are interesting: every failure is logged, a recovery is
logged once, steady success is silent.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

import httpx
import structlog

from singleport.core.config import KeepaliveConfig
from singleport.discovery.cell import HostnameCell
from singleport.observability.metrics import KEEPALIVE_PROBES

logger = structlog.get_logger()


@dataclass
class KeepaliveState:
    """Outcome of the most recent probe. Starts optimistic."""

    last_success: bool = True
    probes: int = 0
    failures: int = 0


class KeepaliveMonitor:
    """Periodically probes ``<scheme>://<hostname><keepalive_path>``."""

    def __init__(
        self,
        cell: HostnameCell,
        config: KeepaliveConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cell = cell
        self.config = config or KeepaliveConfig()
        self.state = KeepaliveState()
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task | None = None

    @property
    def probe_url(self) -> str | None:
        if self.cell.url is None:
            return None
        return f"{self.cell.url}{self.config.keepalive_path}"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _create_client(self) -> httpx.AsyncClient:
        # redirects count as failures, they are not followed
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.keepalive_timeout),
            follow_redirects=False,
            headers={
                "User-Agent": self.config.keepalive_user_agent,
                "Accept": "*/*",
                "Accept-Language": "en-US,en;q=0.9",
            },
        )

    async def probe_once(self) -> bool:
        """Issue one probe and record its outcome."""
        url = self.probe_url
        if url is None:
            logger.debug("Keepalive skipped, hostname not resolved yet")
            return False

        if self._client is None:
            self._client = self._create_client()

        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            self._record_failure(url, error=str(e) or type(e).__name__)
            return False

        if 200 <= response.status_code < 300:
            self._record_success(url)
            return True
        self._record_failure(url, status=response.status_code)
        return False

    def _record_success(self, url: str) -> None:
        KEEPALIVE_PROBES.labels(outcome="success").inc()
        self.state.probes += 1
        if not self.state.last_success:
            logger.info("Keepalive recovered", url=url)
        self.state.last_success = True

    def _record_failure(self, url: str, **details: object) -> None:
        KEEPALIVE_PROBES.labels(outcome="failure").inc()
        self.state.probes += 1
        self.state.failures += 1
        self.state.last_success = False
        logger.warning("Keepalive probe failed", url=url, **details)

    async def run(self) -> None:
        """Probe forever, one probe per interval, the first after one interval."""
        await self.cell.wait()
        logger.info(
            "Keepalive started",
            url=self.probe_url,
            interval=self.config.keepalive_interval,
        )
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            await self.probe_once()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_client and self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.aclose()
            self._client = None
