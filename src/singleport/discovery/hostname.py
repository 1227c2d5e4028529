"""Public hostname discovery.

A quick tunnel agent (cloudflared without a named tunnel) gets a random
``*.trycloudflare.com`` hostname and only reports it in its log. Discovery
polls that log until the hostname shows up, and gives up after a bounded
number of reads, falling back to a placeholder hostname so the process can
keep running in a degraded state.

When a fixed hostname is configured there is nothing to discover and the
result is available immediately.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from singleport.core.config import DiscoveryConfig
from singleport.discovery.cell import HostnameCell

logger = structlog.get_logger()


class HostnameSource(Enum):
    """Where the resolved hostname came from."""

    FIXED = "fixed"
    DISCOVERED = "discovered"
    FALLBACK = "fallback"


@dataclass
class DiscoveryState:
    """Progress of a discovery run. Terminal once a hostname is set."""

    max_retries: int
    retry_count: int = 0
    hostname: str | None = None
    source: HostnameSource | None = None

    @property
    def pending(self) -> bool:
        return self.hostname is None

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def resolve(self, hostname: str, source: HostnameSource) -> None:
        if not self.pending:
            raise RuntimeError(f"discovery already resolved to {self.hostname!r}")
        self.hostname = hostname
        self.source = source


def build_hostname_pattern(domain_suffix: str) -> re.Pattern[str]:
    """Pattern capturing the host of an https URL under ``domain_suffix``."""
    return re.compile(rf"https://([^/\s]*{re.escape(domain_suffix)})")


def find_hostname(text: str, pattern: re.Pattern[str]) -> str | None:
    """First matching hostname in ``text``, if any."""
    match = pattern.search(text)
    return match.group(1) if match else None


class HostnameDiscovery:
    """Resolves the public hostname and publishes it into a HostnameCell."""

    def __init__(self, config: DiscoveryConfig, cell: HostnameCell | None = None) -> None:
        self.config = config
        self.cell = cell or HostnameCell(scheme=config.public_scheme)
        self.state = DiscoveryState(max_retries=config.max_retries)
        self._pattern = build_hostname_pattern(config.domain_suffix)

    @property
    def artifact_path(self) -> Path:
        return Path(self.config.artifact_path)

    def resolve_fixed(self) -> bool:
        """Resolve from the configured hostname, if there is one."""
        if not self.config.fixed_hostname:
            return False
        self._finish(self.config.fixed_hostname, HostnameSource.FIXED)
        logger.info("Using fixed hostname", hostname=self.config.fixed_hostname)
        return True

    async def resolve(self) -> DiscoveryState:
        """Run discovery to completion. Never raises for a missing hostname."""
        if not self.state.pending:
            return self.state
        if self.resolve_fixed():
            return self.state

        logger.info(
            "Waiting for tunnel hostname",
            artifact=str(self.artifact_path),
            interval=self.config.poll_interval,
            max_retries=self.config.max_retries,
        )
        while self.state.pending:
            await asyncio.sleep(self.config.poll_interval)
            self.state.retry_count += 1
            hostname = await self.scan()
            if hostname:
                self._finish(hostname, HostnameSource.DISCOVERED)
                logger.info(
                    "Tunnel hostname discovered",
                    hostname=hostname,
                    attempts=self.state.retry_count,
                    url=self.cell.url,
                )
            elif self.state.exhausted:
                self._finish(self.config.fallback_hostname, HostnameSource.FALLBACK)
                logger.error(
                    "Timed out waiting for tunnel hostname",
                    attempts=self.state.retry_count,
                    fallback=self.config.fallback_hostname,
                )
        return self.state

    async def scan(self) -> str | None:
        """Read the artifact once and look for a hostname."""
        try:
            text = await asyncio.to_thread(
                self.artifact_path.read_text, encoding="utf-8", errors="replace"
            )
        except FileNotFoundError:
            logger.debug("Discovery artifact not there yet", artifact=str(self.artifact_path))
            return None
        except OSError as e:
            logger.warning("Cannot read discovery artifact", artifact=str(self.artifact_path), error=str(e))
            return None
        return find_hostname(text, self._pattern)

    def _finish(self, hostname: str, source: HostnameSource) -> None:
        self.state.resolve(hostname, source)
        self.cell.publish(hostname)
