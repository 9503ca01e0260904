"""Registration handshake with the tunnel broker."""

from __future__ import annotations

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from burrow.core.config import TunnelOptions
from burrow.core.exceptions import RegistrationFailedError, format_error_for_user

logger = structlog.get_logger()


class TunnelDescriptor(BaseModel):
    """Tunnel metadata returned by the broker."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    url: str
    port: int = Field(ge=1, le=65535)
    max_conn_count: int = 0


def build_registration_url(options: TunnelOptions) -> str:
    """`<broker_host>[/<subdomain>]?new=`"""
    base = options.broker_host.rstrip("/")
    if options.subdomain:
        base = f"{base}/{options.subdomain}"
    return f"{base}?new="


async def request_tunnel(
    options: TunnelOptions,
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> TunnelDescriptor:
    """Ask the broker for a new tunnel.

    Args:
        options: Tunnel options (broker host and optional subdomain)
        timeout: Request timeout in seconds
        client: HTTP client to use; a short-lived one is created if omitted

    Returns:
        The broker's tunnel descriptor

    Raises:
        RegistrationFailedError: On transport errors, non-200 responses, or
            a body that is not a valid descriptor
    """
    url = build_registration_url(options)
    logger.debug("Requesting tunnel", url=url)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=False)

    try:
        response = await client.get(url, timeout=timeout)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise RegistrationFailedError(options.broker_host, format_error_for_user(e)) from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != httpx.codes.OK:
        raise RegistrationFailedError(
            options.broker_host,
            f"server responded with status {response.status_code}",
        )

    try:
        descriptor = TunnelDescriptor.model_validate_json(response.content)
    except ValidationError as e:
        raise RegistrationFailedError(options.broker_host, f"failed to decode response: {e}") from e

    logger.info(
        "Tunnel registered",
        tunnel_id=descriptor.id,
        url=descriptor.url,
        port=descriptor.port,
        max_conn_count=descriptor.max_conn_count,
    )
    return descriptor
