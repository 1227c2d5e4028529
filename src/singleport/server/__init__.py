"""Shared public port: classifier, status responder and backend relay."""

from singleport.server.listener import MuxServer, SniffingProtocol
from singleport.server.main import SingleportServer
from singleport.server.relay import RelayPair, open_relay
from singleport.server.sniffer import (
    ClassificationDecision,
    Connection,
    ConnectionState,
    Verdict,
    classify,
    get_classifier,
)
from singleport.server.status import StatusResponder

__all__ = [
    "ClassificationDecision",
    "Connection",
    "ConnectionState",
    "MuxServer",
    "RelayPair",
    "SingleportServer",
    "SniffingProtocol",
    "StatusResponder",
    "Verdict",
    "classify",
    "get_classifier",
    "open_relay",
]
