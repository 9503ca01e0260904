"""Core."""

from .config import (
    DEFAULT_BROKER_HOST,
    DEFAULT_LOCAL_HOST,
    BurrowConfig,
    PoolConfig,
    TimeoutConfig,
    TunnelOptions,
    flatten_config,
    load_config_from_file,
)
from .exceptions import (
    BurrowError,
    DialFailedError,
    InvalidEndpointError,
    MalformedStreamError,
    ProxyIOError,
    RegistrationFailedError,
    format_error_for_user,
)

__all__ = [
    # Config
    "DEFAULT_BROKER_HOST",
    "DEFAULT_LOCAL_HOST",
    "BurrowConfig",
    "PoolConfig",
    "TimeoutConfig",
    "TunnelOptions",
    "flatten_config",
    "load_config_from_file",
    # Errors
    "BurrowError",
    "DialFailedError",
    "InvalidEndpointError",
    "MalformedStreamError",
    "ProxyIOError",
    "RegistrationFailedError",
    "format_error_for_user",
]
