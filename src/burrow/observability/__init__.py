from burrow.observability.metrics import (
    ACTIVE_SLOTS,
    BROKER_DIALS,
    BYTES_PROXIED,
    EXCHANGES,
    LOCAL_DIALS,
    start_metrics_server,
)

__all__ = [
    "ACTIVE_SLOTS",
    "BROKER_DIALS",
    "BYTES_PROXIED",
    "EXCHANGES",
    "LOCAL_DIALS",
    "start_metrics_server",
]
