"""Shared public listener.

Every accepted connection is buffered until its first bytes arrive, then
classified exactly once and handed to the status responder (plain HTTP) or
to the backend relay (tunnel traffic). After the hand-off the listener no
longer reads from the socket: the transport's protocol is replaced by the
chosen handler.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from singleport.core.config import ListenerConfig
from singleport.core.exceptions import ListenerBindError
from singleport.observability.metrics import CONNECTIONS_CLASSIFIED
from singleport.server.relay import RelayPair, open_relay
from singleport.server.sniffer import (
    ClassificationDecision,
    Classifier,
    Connection,
    Verdict,
    get_classifier,
)
from singleport.server.status import StatusResponder

logger = structlog.get_logger()


def _format_peer(peername: object) -> str:
    if isinstance(peername, tuple) and len(peername) >= 2:
        host, port = peername[0], peername[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return "unknown"


class SniffingProtocol(asyncio.Protocol):
    """Accumulates bytes of a fresh connection until it can be classified."""

    def __init__(self, server: MuxServer) -> None:
        self._server = server
        self._conn: Connection | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        peer = _format_peer(transport.get_extra_info("peername"))
        self._conn = Connection(transport=transport, peer=peer)  # type: ignore[arg-type]
        self._server.track(self._conn)
        timeout = self._server.config.classify_timeout
        if timeout:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(timeout, self._expire)

    def data_received(self, data: bytes) -> None:
        conn = self._conn
        if conn is None:
            return
        conn.feed(data)
        self._cancel_timeout()
        self._server.untrack(conn)
        decision = conn.classify(self._server.classifier)
        self._server.dispatch(conn, decision)

    def eof_received(self) -> bool:
        return False

    def connection_lost(self, exc: Exception | None) -> None:
        self._cancel_timeout()
        if self._conn is not None:
            self._conn.closed = True
            self._server.untrack(self._conn)
            if not self._conn.classified:
                logger.debug("Connection closed before sending data", peer=self._conn.peer)

    def _expire(self) -> None:
        self._timeout_handle = None
        conn = self._conn
        if conn is not None and not conn.classified:
            logger.debug("Connection sent nothing, closing", peer=conn.peer)
            conn.transport.abort()

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None


class MuxServer:
    """Single public port serving the status responder and the backend relay."""

    def __init__(self, config: ListenerConfig, status: StatusResponder | None = None) -> None:
        self.config = config
        self.classifier: Classifier = get_classifier(config.sniff_policy, config.upgrade_path)
        self.status = status or StatusResponder(config.health_path, config.metrics_path)
        self._server: asyncio.Server | None = None
        self._unclassified: set[Connection] = set()
        self._relays: set[RelayPair] = set()
        self._relay_tasks: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """Port actually bound (useful when listen_port is 0)."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Listener is not running")
        return self._server.sockets[0].getsockname()[1]

    @property
    def backend_port(self) -> int:
        return self.config.effective_backend_port

    @property
    def active_relays(self) -> int:
        return len(self._relays)

    @property
    def unclassified(self) -> int:
        """Accepted connections that have not sent a byte yet."""
        return len(self._unclassified)

    async def start(self) -> None:
        """Bind the public port. Raises ListenerBindError if that is impossible."""
        await self.status.start()
        loop = asyncio.get_running_loop()
        try:
            self._server = await loop.create_server(
                lambda: SniffingProtocol(self),
                self.config.listen_host,
                self.config.listen_port,
            )
        except OSError as e:
            await self.status.stop()
            raise ListenerBindError(
                self.config.listen_host, self.config.listen_port, e.strerror or str(e)
            ) from e

        logger.info(
            "Listener started",
            host=self.config.listen_host or "*",
            port=self.port,
            backend=f"{self.config.backend_host}:{self.backend_port}",
            policy=self.config.sniff_policy.value,
        )

    async def stop(self) -> None:
        """Stop accepting and sever every open relay."""
        if self._server is not None:
            self._server.close()

        for task in list(self._relay_tasks):
            task.cancel()
        for task in list(self._relay_tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for pair in list(self._relays):
            pair.abort()
        self._relays.clear()
        for conn in list(self._unclassified):
            conn.transport.abort()
        self._unclassified.clear()

        await self.status.stop()
        if self._server is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            self._server = None
        logger.info("Listener stopped")

    def track(self, conn: Connection) -> None:
        self._unclassified.add(conn)

    def untrack(self, conn: Connection) -> None:
        self._unclassified.discard(conn)

    def dispatch(self, conn: Connection, decision: ClassificationDecision) -> None:
        """Hand a freshly classified connection to its handler."""
        CONNECTIONS_CLASSIFIED.labels(verdict=decision.verdict.value).inc()
        logger.debug(
            "Connection classified",
            peer=conn.peer,
            verdict=decision.verdict.value,
            prefix_bytes=len(decision.prefix),
        )

        if decision.verdict is Verdict.HTTP:
            self.status.adopt(conn.transport, decision.prefix)
            return

        conn.transport.pause_reading()
        task = asyncio.get_running_loop().create_task(self._relay(conn, decision))
        self._relay_tasks.add(task)
        task.add_done_callback(self._relay_tasks.discard)

    async def _relay(self, conn: Connection, decision: ClassificationDecision) -> None:
        try:
            pair = await open_relay(
                conn,
                decision,
                self.config.backend_host,
                self.backend_port,
                connect_timeout=self.config.backend_connect_timeout,
                close_timeout=self.config.relay_close_timeout,
                on_closed=self._relays.discard,
            )
        except asyncio.CancelledError:
            conn.transport.abort()
            raise
        if pair is not None and not pair.closed.is_set():
            self._relays.add(pair)
