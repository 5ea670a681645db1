"""
Shared key-value store connection (Valkey/Redis protocol).

Used by the issue cache and by the sync queue job-state store. Returns None when
SKIP_VALKEY_CONNECTION is set or VALKEY_URL is missing so callers run degraded.
"""

from typing import Optional

import redis

from issue_sync.core.config import get_settings
from issue_sync.core.logging_config import get_logger

logger = get_logger(__name__)

_connection: Optional[redis.Redis] = None


def get_valkey_connection() -> Optional[redis.Redis]:
    """Returns the shared connection, creating it on first use."""
    global _connection
    settings = get_settings()

    if settings.SKIP_VALKEY_CONNECTION:
        logger.info("SKIP_VALKEY_CONNECTION set - key-value store disabled")
        return None

    if not settings.VALKEY_URL:
        logger.warning("VALKEY_URL not configured - key-value store disabled")
        return None

    if _connection is None:
        try:
            _connection = redis.from_url(settings.VALKEY_URL, decode_responses=True)
            _connection.ping()
            logger.info("✅ Valkey connection established")
        except Exception as e:
            logger.error(f"❌ Failed to connect to Valkey: {e}")
            _connection = None

    return _connection


def duplicate_connection(connection: Optional[redis.Redis]) -> Optional[redis.Redis]:
    """
    Creates a dedicated connection with the same parameters as `connection`.

    The copy gets its own pool so cache traffic does not contend with job-state traffic.
    """
    if connection is None:
        return None
    kwargs = dict(connection.connection_pool.connection_kwargs)
    pool = connection.connection_pool.__class__(
        connection_class=connection.connection_pool.connection_class,
        **kwargs
    )
    return redis.Redis(connection_pool=pool)


def close_valkey_connection():
    """Closes the shared connection if one was opened."""
    global _connection
    if _connection is not None:
        try:
            _connection.close()
        except Exception as e:
            logger.debug(f"Error closing Valkey connection (suppressed): {e}")
        finally:
            _connection = None
