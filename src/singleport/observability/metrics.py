from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

CONNECTIONS_CLASSIFIED = Counter(
    "singleport_connections_classified_total",
    "Connections classified on the public port",
    ["verdict"],  # http/tunnel
)

BACKEND_CONNECT_FAILURES = Counter(
    "singleport_backend_connect_failures_total",
    "Failed connection attempts to the private backend",
)

RELAY_BYTES = Counter(
    "singleport_relay_bytes_total",
    "Bytes relayed between public clients and the backend",
    ["direction"],  # upstream: client -> backend, downstream: backend -> client
)

ACTIVE_RELAYS = Gauge(
    "singleport_active_relays",
    "Current open relays",
)

KEEPALIVE_PROBES = Counter(
    "singleport_keepalive_probes_total",
    "Keepalive probes against the public hostname",
    ["outcome"],  # success/failure
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
