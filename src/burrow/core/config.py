"""Configuration types with environment variable support.

Timeouts and pool tuning can be configured via environment variables with
the BURROW_ prefix. Example: BURROW_IDLE_TIMEOUT=120 sets idle_timeout to 2
minutes.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BROKER_HOST = "https://localtunnel.me"
DEFAULT_LOCAL_HOST = "localhost"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class TunnelOptions(BaseModel):
    """Per-session tunnel options.

    Immutable once constructed; a session reads them for its whole lifetime.
    """

    model_config = ConfigDict(frozen=True)

    local_port: int = Field(
        ge=1,
        le=65535,
        description="Port of the local server to expose.",
    )
    broker_host: str = Field(
        default=DEFAULT_BROKER_HOST,
        description="Base URL of the tunnel broker used for registration.",
    )
    local_host: str = Field(
        default=DEFAULT_LOCAL_HOST,
        description="Host of the local server. Also used as the rewritten Host header.",
    )
    subdomain: str | None = Field(
        default=None,
        description="Requested subdomain (the broker may assign another one).",
    )
    local_https: bool = Field(
        default=False,
        description="Connect to the local server over TLS without certificate checks.",
    )
    broker_tls: bool = Field(
        default=False,
        description="Wrap broker data connections in TLS.",
    )

    @property
    def local_address(self) -> str:
        """host:port of the local server, as sent in the Host header."""
        return f"{self.local_host}:{self.local_port}"


class TimeoutConfig(BaseSettings):
    """Timeout configuration.

    All timeouts are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="BURROW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    dial_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for dialing a broker data connection (seconds).",
    )
    local_dial_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for dialing the local server (seconds).",
    )
    idle_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Maximum idle time on a broker read before the slot is torn down (seconds).",
    )
    handshake_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for the registration request (seconds).",
    )
    health_check_interval: float = Field(
        default=30.0,
        gt=0,
        description="Interval between health sweeps that re-dial dead slots (seconds).",
    )


class PoolConfig(BaseSettings):
    """Connection pool configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BURROW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_max_connections: int = Field(
        default=10,
        ge=1,
        description="Pool size used when the broker does not advertise one.",
    )
    read_chunk_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Maximum bytes read per copy iteration.",
    )
    max_pending_errors: int = Field(
        default=10,
        ge=1,
        description="Pending error events kept before new ones are dropped.",
    )
    max_pending_requests: int = Field(
        default=100,
        ge=1,
        description="Pending request events kept before new ones are dropped.",
    )


class BurrowConfig(BaseModel):
    """Configuration for one tunnel session.

    Built once per session and handed down explicitly to the pool and its
    connections.

    Example:
        config = BurrowConfig()
        print(config.timeouts.dial_timeout)
        print(config.pool.default_max_connections)
    """

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "timeouts": self.timeouts.model_dump(),
            "pool": self.pool.model_dump(),
        }
