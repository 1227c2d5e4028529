"""Public hostname discovery and keepalive."""

from singleport.discovery.cell import HostnameCell
from singleport.discovery.hostname import (
    DiscoveryState,
    HostnameDiscovery,
    HostnameSource,
    build_hostname_pattern,
    find_hostname,
)
from singleport.discovery.keepalive import KeepaliveMonitor, KeepaliveState

__all__ = [
    "DiscoveryState",
    "HostnameCell",
    "HostnameDiscovery",
    "HostnameSource",
    "KeepaliveMonitor",
    "KeepaliveState",
    "build_hostname_pattern",
    "find_hostname",
]
