"""Socket helpers shared by the listener and server tests."""

from __future__ import annotations

import asyncio
import contextlib
import socket
from collections.abc import AsyncIterator

from singleport.core.config import ListenerConfig, SniffPolicy
from singleport.server.listener import MuxServer

UPGRADE_REQUEST = (
    b"GET /king?ed=2048 HTTP/1.1\r\n"
    b"Host: example-abc123.trycloudflare.com\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
    b"Sec-WebSocket-Version: 13\r\n\r\n"
)


def free_port() -> int:
    """A loopback port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class RecordingBackend:
    """Loopback server that records what it receives and optionally echoes it."""

    def __init__(self, echo: bool = True, greeting: bytes = b"") -> None:
        self.echo = echo
        self.greeting = greeting
        self.received = bytearray()
        self.connected = asyncio.Event()
        self.eof = asyncio.Event()
        self.connections = 0
        self.writers: list[asyncio.StreamWriter] = []
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        assert self._server is not None
        return self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self.writers.append(writer)
        self.connected.set()
        if self.greeting:
            writer.write(self.greeting)
            await writer.drain()
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received.extend(data)
                if self.echo:
                    writer.write(data)
                    await writer.drain()
        except ConnectionError:
            pass
        finally:
            self.eof.set()
            writer.close()

    async def __aenter__(self) -> RecordingBackend:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def __aexit__(self, *exc: object) -> None:
        assert self._server is not None
        for writer in self.writers:
            writer.close()
        self._server.close()


def listener_config(backend_port: int, **overrides: object) -> ListenerConfig:
    values: dict[str, object] = {
        "listen_host": "127.0.0.1",
        "listen_port": 0,
        "backend_port": backend_port,
        "sniff_policy": SniffPolicy.WEBSOCKET_PATH,
        "relay_close_timeout": 0.5,
    }
    values.update(overrides)
    return ListenerConfig(**values)


@contextlib.asynccontextmanager
async def running_mux(config: ListenerConfig) -> AsyncIterator[MuxServer]:
    mux = MuxServer(config)
    await mux.start()
    try:
        yield mux
    finally:
        await mux.stop()


async def read_until_closed(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    """Read everything until the peer closes; a reset counts as closed."""
    chunks = bytearray()
    try:
        while True:
            data = await asyncio.wait_for(reader.read(65536), timeout)
            if not data:
                break
            chunks.extend(data)
    except ConnectionError:
        pass
    return bytes(chunks)


async def http_exchange(port: int, *parts: bytes, pause: float = 0.0) -> bytes:
    """Send a request in one or more writes and return the raw response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        for i, part in enumerate(parts):
            writer.write(part)
            await writer.drain()
            if pause and i < len(parts) - 1:
                await asyncio.sleep(pause)
        return await read_until_closed(reader)
    finally:
        writer.close()


def split_response(raw: bytes) -> tuple[bytes, bytes, bytes]:
    """Return (status line, header block, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    status_line, _, headers = head.partition(b"\r\n")
    return status_line, headers, body
