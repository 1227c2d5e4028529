"""Core."""

from .config import (
    DiscoveryConfig,
    KeepaliveConfig,
    ListenerConfig,
    ShareLinkConfig,
    SingleportConfig,
    SniffPolicy,
    clear_config,
    get_config,
)
from .exceptions import (
    ConfigError,
    HostnameAlreadyResolvedError,
    ListenerBindError,
    SingleportError,
)

__all__ = [
    "DiscoveryConfig",
    "KeepaliveConfig",
    "ListenerConfig",
    "ShareLinkConfig",
    "SingleportConfig",
    "SniffPolicy",
    "clear_config",
    "get_config",
    "ConfigError",
    "HostnameAlreadyResolvedError",
    "ListenerBindError",
    "SingleportError",
]
