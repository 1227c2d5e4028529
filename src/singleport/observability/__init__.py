from singleport.observability.metrics import (
    ACTIVE_RELAYS,
    BACKEND_CONNECT_FAILURES,
    CONNECTIONS_CLASSIFIED,
    KEEPALIVE_PROBES,
    RELAY_BYTES,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "ACTIVE_RELAYS",
    "BACKEND_CONNECT_FAILURES",
    "CONNECTIONS_CLASSIFIED",
    "KEEPALIVE_PROBES",
    "RELAY_BYTES",
    "generate_metrics",
    "get_content_type",
]
