from prometheus_client import Counter, Gauge, start_http_server

BROKER_DIALS = Counter(
    "burrow_broker_dials_total",
    "Broker data connection dial attempts",
    ["outcome"],  # outcome: success/failure
)

LOCAL_DIALS = Counter(
    "burrow_local_dials_total",
    "Local server dial attempts",
    ["outcome"],
)

EXCHANGES = Counter(
    "burrow_exchanges_total",
    "Proxied exchanges by result",
    ["result"],  # result: ok/error
)

BYTES_PROXIED = Counter(
    "burrow_bytes_total",
    "Bytes proxied between broker and local server",
    ["direction"],  # direction: inbound (broker->local) / outbound (local->broker)
)

ACTIVE_SLOTS = Gauge(
    "burrow_active_slots",
    "Pool slots currently holding a live broker connection",
)


def start_metrics_server(port: int, addr: str = "127.0.0.1") -> None:
    """Serve /metrics for this process on a background thread."""
    start_http_server(port, addr=addr)
