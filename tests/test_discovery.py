"""Tests for public hostname discovery and the hostname cell."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from singleport.core.config import DiscoveryConfig
from singleport.core.exceptions import HostnameAlreadyResolvedError
from singleport.discovery.cell import HostnameCell
from singleport.discovery.hostname import (
    DiscoveryState,
    HostnameDiscovery,
    HostnameSource,
    build_hostname_pattern,
    find_hostname,
)

CLOUDFLARED_LOG = """\
2024-05-01T10:00:00Z INF Thank you for trying Cloudflare Tunnel.
2024-05-01T10:00:00Z INF Requesting new quick Tunnel on trycloudflare.com...
2024-05-01T10:00:02Z INF +--------------------------------------------------------------------------------------------+
2024-05-01T10:00:02Z INF |  Your quick Tunnel has been created! Visit it at (it may take some time to be reachable):  |
2024-05-01T10:00:02Z INF |  https://example-abc123.trycloudflare.com                                                  |
2024-05-01T10:00:02Z INF +--------------------------------------------------------------------------------------------+
"""


def discovery_config(artifact: Path, **overrides: object) -> DiscoveryConfig:
    values: dict[str, object] = {
        "artifact_path": str(artifact),
        "poll_interval": 0.01,
        "max_retries": 10,
    }
    values.update(overrides)
    return DiscoveryConfig(**values)


class CountingDiscovery(HostnameDiscovery):
    """Counts artifact reads."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.scans = 0

    async def scan(self) -> str | None:
        self.scans += 1
        return await super().scan()


class TestHostnamePattern:
    """Tests for hostname extraction from log text."""

    def test_finds_hostname_in_cloudflared_banner(self) -> None:
        pattern = build_hostname_pattern("trycloudflare.com")
        assert find_hostname(CLOUDFLARED_LOG, pattern) == "example-abc123.trycloudflare.com"

    def test_stops_at_path(self) -> None:
        pattern = build_hostname_pattern("trycloudflare.com")
        text = "visit https://example-abc123.trycloudflare.com/somepath now"
        assert find_hostname(text, pattern) == "example-abc123.trycloudflare.com"

    def test_bare_domain_mention_is_not_a_hostname(self) -> None:
        pattern = build_hostname_pattern("trycloudflare.com")
        assert find_hostname("Requesting new quick Tunnel on trycloudflare.com...", pattern) is None

    def test_does_not_span_whitespace(self) -> None:
        pattern = build_hostname_pattern("trycloudflare.com")
        text = "https://docs.example.org see trycloudflare.com"
        assert find_hostname(text, pattern) is None

    def test_first_match_wins(self) -> None:
        pattern = build_hostname_pattern("trycloudflare.com")
        text = "https://one.trycloudflare.com\nhttps://two.trycloudflare.com\n"
        assert find_hostname(text, pattern) == "one.trycloudflare.com"

    def test_suffix_is_escaped(self) -> None:
        pattern = build_hostname_pattern("tunnel.example")
        assert find_hostname("https://abcXtunnelYexample", pattern) is None
        assert find_hostname("https://abc.tunnel.example", pattern) == "abc.tunnel.example"


class TestDiscoveryState:
    """Tests for the discovery state record."""

    def test_pending_until_resolved(self) -> None:
        state = DiscoveryState(max_retries=3)
        assert state.pending
        state.resolve("a.trycloudflare.com", HostnameSource.DISCOVERED)
        assert not state.pending
        assert state.source is HostnameSource.DISCOVERED

    def test_resolve_twice_raises(self) -> None:
        state = DiscoveryState(max_retries=3)
        state.resolve("a.trycloudflare.com", HostnameSource.DISCOVERED)
        with pytest.raises(RuntimeError):
            state.resolve("b.trycloudflare.com", HostnameSource.DISCOVERED)

    def test_exhausted(self) -> None:
        state = DiscoveryState(max_retries=2, retry_count=2)
        assert state.exhausted


class TestHostnameDiscovery:
    """Tests for polling the tunnel agent's log."""

    @pytest.mark.asyncio
    async def test_fixed_hostname_skips_polling(self, tmp_path: Path) -> None:
        config = discovery_config(tmp_path / "boot.log", fixed_hostname="tunnel.example.com")
        discovery = CountingDiscovery(config)

        state = await discovery.resolve()

        assert state.hostname == "tunnel.example.com"
        assert state.source is HostnameSource.FIXED
        assert state.retry_count == 0
        assert discovery.scans == 0
        assert discovery.cell.value == "tunnel.example.com"

    @pytest.mark.asyncio
    async def test_discovers_hostname_from_artifact(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        artifact.write_text("noise\nhttps://example-abc123.trycloudflare.com/somepath\n")
        discovery = HostnameDiscovery(discovery_config(artifact))

        state = await discovery.resolve()

        assert state.hostname == "example-abc123.trycloudflare.com"
        assert state.source is HostnameSource.DISCOVERED
        assert state.retry_count == 1
        assert discovery.cell.url == "https://example-abc123.trycloudflare.com"

    @pytest.mark.asyncio
    async def test_waits_for_artifact_to_appear(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        discovery = HostnameDiscovery(discovery_config(artifact, max_retries=200))
        task = asyncio.create_task(discovery.resolve())

        await asyncio.sleep(0.05)
        assert not task.done()
        artifact.write_text(CLOUDFLARED_LOG)

        state = await asyncio.wait_for(task, 5)
        assert state.source is HostnameSource.DISCOVERED
        assert state.retry_count > 1

    @pytest.mark.asyncio
    async def test_falls_back_after_max_retries(self, tmp_path: Path) -> None:
        discovery = CountingDiscovery(discovery_config(tmp_path / "missing.log", poll_interval=0.001))

        state = await discovery.resolve()

        assert state.hostname == "unknown.trycloudflare.com"
        assert state.source is HostnameSource.FALLBACK
        assert state.retry_count == 10
        assert discovery.scans == 10
        assert discovery.cell.value == "unknown.trycloudflare.com"

    @pytest.mark.asyncio
    async def test_artifact_without_hostname_falls_back(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        artifact.write_text("Requesting new quick Tunnel on trycloudflare.com...\n")
        config = discovery_config(artifact, max_retries=3, fallback_hostname="placeholder.example")

        state = await HostnameDiscovery(config).resolve()

        assert state.hostname == "placeholder.example"
        assert state.retry_count == 3

    @pytest.mark.asyncio
    async def test_undecodable_bytes_are_tolerated(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        artifact.write_bytes(b"\xff\xfe garbage\nhttps://x-1.trycloudflare.com\n")

        state = await HostnameDiscovery(discovery_config(artifact)).resolve()

        assert state.hostname == "x-1.trycloudflare.com"

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        artifact.write_text(CLOUDFLARED_LOG)
        discovery = CountingDiscovery(discovery_config(artifact))

        first = await discovery.resolve()
        second = await discovery.resolve()

        assert first is second
        assert discovery.scans == 1

    @pytest.mark.asyncio
    async def test_publishes_into_shared_cell(self, tmp_path: Path) -> None:
        artifact = tmp_path / "boot.log"
        artifact.write_text(CLOUDFLARED_LOG)
        cell = HostnameCell()
        waiter = asyncio.create_task(cell.wait())

        await HostnameDiscovery(discovery_config(artifact), cell).resolve()

        assert await asyncio.wait_for(waiter, 1) == "example-abc123.trycloudflare.com"


class TestHostnameCell:
    """Tests for the write-once hostname cell."""

    def test_unresolved_cell(self) -> None:
        cell = HostnameCell()
        assert cell.value is None
        assert cell.url is None
        assert not cell.resolved

    def test_publish_sets_url(self) -> None:
        cell = HostnameCell(scheme="http")
        cell.publish("a.example")
        assert cell.resolved
        assert cell.url == "http://a.example"

    def test_second_publish_raises(self) -> None:
        cell = HostnameCell()
        cell.publish("a.example")
        with pytest.raises(HostnameAlreadyResolvedError):
            cell.publish("b.example")
        assert cell.value == "a.example"

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_when_resolved(self) -> None:
        cell = HostnameCell()
        cell.publish("a.example")
        assert await asyncio.wait_for(cell.wait(), 1) == "a.example"
