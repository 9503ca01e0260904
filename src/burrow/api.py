"""Convenience entry points."""

from __future__ import annotations

import webbrowser
from typing import Any

from burrow.client.tunnel import Tunnel
from burrow.core.config import BurrowConfig, TunnelOptions


def create_tunnel(
    port: int,
    options: TunnelOptions | None = None,
    config: BurrowConfig | None = None,
    **overrides: Any,
) -> Tunnel:
    """Create an unopened tunnel for a local port.

    Keyword overrides (broker_host, local_host, subdomain, local_https,
    broker_tls) take precedence over the given options.
    """
    if options is None:
        options = TunnelOptions(local_port=port, **overrides)
    else:
        options = TunnelOptions.model_validate({**options.model_dump(), "local_port": port, **overrides})
    return Tunnel(options, config)


async def open_tunnel(
    port: int,
    options: TunnelOptions | None = None,
    config: BurrowConfig | None = None,
    **overrides: Any,
) -> Tunnel:
    """Create a tunnel and open it in one call.

    Example:
        tunnel = await open_tunnel(8080, subdomain="myapp")
        try:
            print(await tunnel.url())
        finally:
            await tunnel.close()
    """
    tunnel = create_tunnel(port, options, config, **overrides)
    await tunnel.open()
    return tunnel


def open_url(url: str) -> bool:
    """Open a URL in the default browser."""
    return webbrowser.open(url)
