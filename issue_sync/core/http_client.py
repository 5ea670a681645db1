"""
Shared outbound HTTP client for provider adapters and the search indexer.

One httpx.AsyncClient per event loop. Workers run each job in a fresh loop and call
cleanup_async_client() before closing it, so the next job gets a new client.
"""
from typing import Optional
import httpx
import logging

from issue_sync.core.config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None


def _build_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS, connect=10.0),
        follow_redirects=True,
        headers={'User-Agent': f"{settings.APP_NAME.replace(' ', '-').lower()}/{settings.APP_VERSION}"},
        limits=httpx.Limits(
            max_keepalive_connections=min(20, settings.HTTP_MAX_CONNECTIONS),
            max_connections=settings.HTTP_MAX_CONNECTIONS,
        ),
    )


def get_async_client() -> httpx.AsyncClient:
    """Returns the shared client, creating it on first use or after it was closed."""
    global _client
    if _client is None or _client.is_closed:
        _client = _build_client()
        logger.debug("Created shared HTTP client")
    return _client


async def cleanup_async_client():
    """Closes the shared client. Close errors are logged at debug level only."""
    global _client
    client, _client = _client, None
    if client is None or client.is_closed:
        return

    try:
        await client.aclose()
        logger.debug("Shared HTTP client closed")
    except (httpx.HTTPError, RuntimeError) as e:
        logger.debug(f"Error closing shared HTTP client: {e}")
