"""Shared httpx.AsyncClient for the Tebra SOAP endpoint.

Keeps TLS connections alive across SOAP calls; closed from the app
shutdown hook.
"""

import httpx

from app.config import get_settings

_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared httpx.AsyncClient, creating it lazily."""
    global _client
    if _client is None or _client.is_closed:
        timeout = get_settings().TEBRA_TIMEOUT_SECONDS
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            follow_redirects=True,
        )
    return _client


async def close_http_client() -> None:
    """Close the shared client (call from app shutdown hook)."""
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
    _client = None
