"""Byte relay between a public connection and the private backend.

Tunnel traffic is never interpreted: the buffered prefix is written to the
backend first, then both transports are spliced with protocol callbacks.
When one side's write buffer fills up, reading from the other side is
paused until it drains, so a slow peer stalls the opposite leg instead of
growing memory.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from singleport.observability.metrics import (
    ACTIVE_RELAYS,
    BACKEND_CONNECT_FAILURES,
    RELAY_BYTES,
)
from singleport.server.sniffer import ClassificationDecision, Connection

logger = structlog.get_logger()

_UPSTREAM_BYTES = RELAY_BYTES.labels(direction="upstream")
_DOWNSTREAM_BYTES = RELAY_BYTES.labels(direction="downstream")


class _RelayLeg(asyncio.Protocol):
    """Reads from one transport and writes to the other side of the pair."""

    def __init__(self, pair: RelayPair, upstream: bool) -> None:
        self._pair = pair
        self._upstream = upstream
        self.transport: asyncio.Transport | None = None

    @property
    def _peer(self) -> asyncio.Transport | None:
        return self._pair.backend if self._upstream else self._pair.public

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def data_received(self, data: bytes) -> None:
        peer = self._peer
        if peer is None or peer.is_closing():
            return
        peer.write(data)
        if self._upstream:
            self._pair.bytes_up += len(data)
            _UPSTREAM_BYTES.inc(len(data))
        else:
            self._pair.bytes_down += len(data)
            _DOWNSTREAM_BYTES.inc(len(data))

    def eof_received(self) -> bool:
        self._pair.close()
        return False

    def connection_lost(self, exc: Exception | None) -> None:
        self._pair.leg_lost(exc)

    def pause_writing(self) -> None:
        # our own write buffer is full: stop pulling from the other side
        peer = self._peer
        if peer is not None:
            peer.pause_reading()

    def resume_writing(self) -> None:
        peer = self._peer
        if peer is not None and not peer.is_closing():
            peer.resume_reading()


class RelayPair:
    """Public and backend transports spliced together and torn down as a unit."""

    def __init__(
        self,
        public: asyncio.Transport,
        peer: str = "unknown",
        close_timeout: float = 5.0,
        on_closed: Callable[[RelayPair], None] | None = None,
    ) -> None:
        self.public = public
        self.backend: asyncio.Transport | None = None
        self.peer = peer
        self.bytes_up = 0
        self.bytes_down = 0
        self._close_timeout = close_timeout
        self._on_closed = on_closed
        self._closing = False
        self._legs_open = 0
        self._attached = False
        self._abort_handle: asyncio.TimerHandle | None = None
        self.closed = asyncio.Event()

    def backend_leg(self) -> _RelayLeg:
        """Protocol factory for the backend connection."""
        self._legs_open += 1
        return _RelayLeg(self, upstream=False)

    def attach(self, backend: asyncio.Transport) -> None:
        """Take over the public transport once the backend is connected."""
        self.backend = backend
        leg = _RelayLeg(self, upstream=True)
        self._legs_open += 1
        self.public.set_protocol(leg)
        leg.connection_made(self.public)
        self._attached = True
        ACTIVE_RELAYS.inc()

    def close(self) -> None:
        """Close both sides; abort whatever is still open after the grace period."""
        if self._closing:
            return
        self._closing = True
        for transport in (self.public, self.backend):
            if transport is not None and not transport.is_closing():
                transport.close()
        loop = asyncio.get_running_loop()
        self._abort_handle = loop.call_later(self._close_timeout, self.abort)

    def abort(self) -> None:
        """Sever both sides immediately."""
        self._closing = True
        for transport in (self.public, self.backend):
            if transport is not None:
                transport.abort()

    def leg_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.debug("Relay leg lost", peer=self.peer, error=str(exc))
        self.close()
        self._legs_open -= 1
        if self._legs_open > 0:
            return
        if self._abort_handle is not None:
            self._abort_handle.cancel()
            self._abort_handle = None
        if self._attached:
            ACTIVE_RELAYS.dec()
        logger.debug(
            "Relay closed",
            peer=self.peer,
            bytes_up=self.bytes_up,
            bytes_down=self.bytes_down,
        )
        self.closed.set()
        if self._on_closed is not None:
            self._on_closed(self)


async def open_relay(
    conn: Connection,
    decision: ClassificationDecision,
    backend_host: str,
    backend_port: int,
    connect_timeout: float = 10.0,
    close_timeout: float = 5.0,
    on_closed: Callable[[RelayPair], None] | None = None,
) -> RelayPair | None:
    """Connect to the backend and splice it with a tunnel connection.

    The public transport must already be paused. On connect failure the
    public connection is aborted and None is returned; there is no retry,
    the client has to reconnect.
    """
    loop = asyncio.get_running_loop()
    pair = RelayPair(conn.transport, peer=conn.peer, close_timeout=close_timeout, on_closed=on_closed)

    try:
        backend, _ = await asyncio.wait_for(
            loop.create_connection(pair.backend_leg, backend_host, backend_port),
            timeout=connect_timeout,
        )
    except (OSError, TimeoutError) as e:
        BACKEND_CONNECT_FAILURES.inc()
        logger.warning(
            "Backend connect failed",
            peer=conn.peer,
            backend=f"{backend_host}:{backend_port}",
            error=str(e) or type(e).__name__,
        )
        conn.transport.abort()
        return None

    if conn.closed or conn.transport.is_closing():
        logger.debug("Client left before backend connected", peer=conn.peer)
        backend.close()
        return None

    backend.write(decision.prefix)
    pair.bytes_up += len(decision.prefix)
    _UPSTREAM_BYTES.inc(len(decision.prefix))

    pair.attach(backend)
    conn.transport.resume_reading()
    logger.debug("Relay established", peer=conn.peer, prefix_bytes=len(decision.prefix))
    return pair
