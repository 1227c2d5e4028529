"""Protocol sniffing for connections arriving on the shared public port.

The first bytes of every connection decide who owns the socket: the status
responder (plain HTTP) or the backend relay (upgraded tunnel traffic).
Classification is a pure function of the bytes seen so far, so it can be
exercised without sockets:

    classify(b"GET /king HTTP/1.1\\r\\nUpgrade: websocket\\r\\n", policy)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from singleport.core.config import SniffPolicy

HTTP_MARKERS = (b"HTTP/1.1", b"GET ", b"POST ")
WEBSOCKET_UPGRADE_MARKER = b"Upgrade: websocket"


class Verdict(Enum):
    """Terminal classification of a connection."""

    HTTP = "http"
    TUNNEL = "tunnel"


class ConnectionState(Enum):
    """Lifecycle of a public connection."""

    UNCLASSIFIED = "unclassified"
    HTTP = "http"
    TUNNEL = "tunnel"


@dataclass(frozen=True)
class ClassificationDecision:
    """Verdict plus the exact bytes it was made on."""

    verdict: Verdict
    prefix: bytes


def looks_like_http(data: bytes) -> bool:
    """HTTP iff any request marker appears anywhere in the buffer."""
    return any(marker in data for marker in HTTP_MARKERS)


def looks_like_tunnel_upgrade(data: bytes, upgrade_path: str) -> bool:
    """Tunnel iff both the upgrade header and the path marker are present."""
    return WEBSOCKET_UPGRADE_MARKER in data and upgrade_path.encode() in data


Classifier = Callable[[bytes], Verdict]


def get_classifier(policy: SniffPolicy, upgrade_path: str = "/king") -> Classifier:
    """Return the classification strategy for a policy."""
    if policy is SniffPolicy.HTTP_MARKERS:

        def by_http_markers(data: bytes) -> Verdict:
            return Verdict.HTTP if looks_like_http(data) else Verdict.TUNNEL

        return by_http_markers

    if policy is SniffPolicy.WEBSOCKET_PATH:

        def by_websocket_path(data: bytes) -> Verdict:
            if looks_like_tunnel_upgrade(data, upgrade_path):
                return Verdict.TUNNEL
            return Verdict.HTTP

        return by_websocket_path

    raise ValueError(f"Unknown sniff policy: {policy!r}")


def classify(
    data: bytes,
    policy: SniffPolicy = SniffPolicy.WEBSOCKET_PATH,
    upgrade_path: str = "/king",
) -> Verdict:
    """Classify a byte prefix. Empty input is rejected, it never gets classified."""
    if not data:
        raise ValueError("cannot classify an empty buffer")
    return get_classifier(policy, upgrade_path)(bytes(data))


@dataclass(eq=False)
class Connection:
    """A public connection and the bytes read from it before dispatch."""

    transport: asyncio.Transport
    peer: str = "unknown"
    buffer: bytearray = field(default_factory=bytearray)
    state: ConnectionState = ConnectionState.UNCLASSIFIED
    closed: bool = False

    @property
    def classified(self) -> bool:
        return self.state is not ConnectionState.UNCLASSIFIED

    def feed(self, chunk: bytes) -> None:
        self.buffer.extend(chunk)

    def classify(self, classifier: Classifier) -> ClassificationDecision:
        """Classify the buffer once. The decision is final for this connection."""
        if self.classified:
            raise RuntimeError(f"connection from {self.peer} already classified as {self.state.value}")
        if not self.buffer:
            raise ValueError("cannot classify an empty buffer")
        prefix = bytes(self.buffer)
        verdict = classifier(prefix)
        self.state = ConnectionState(verdict.value)
        return ClassificationDecision(verdict=verdict, prefix=prefix)
