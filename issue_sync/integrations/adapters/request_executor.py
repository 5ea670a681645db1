"""
Outbound request execution shared by all adapters: minimum-delay rate limiting,
exponential-backoff retries, and auth header construction.
"""

import asyncio
import base64
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from issue_sync.core.exceptions import ProviderRequestError
from issue_sync.core.http_client import get_async_client
from issue_sync.core.logging_config import get_logger
from issue_sync.integrations.adapters.types import AuthData, PROVIDER_AZURE_DEVOPS, PROVIDER_GITHUB

logger = get_logger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Enforces a minimum delay between consecutive calls on one adapter instance."""

    def __init__(self, delay_ms: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.delay_ms = delay_ms
        self.clock = clock
        self.last_request_time: Optional[float] = None

    async def wait(self):
        if self.last_request_time is not None:
            elapsed_ms = (self.clock() - self.last_request_time) * 1000
            if elapsed_ms < self.delay_ms:
                await asyncio.sleep((self.delay_ms - elapsed_ms) / 1000)
        self.last_request_time = self.clock()


class RequestExecutor:
    """Rate-limited, retried HTTP execution for one adapter."""

    def __init__(
        self,
        rate_limit_delay_ms: int = 1000,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rate_limiter = RateLimiter(rate_limit_delay_ms)
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        # Resolved per call: the shared client is recreated after worker loops close it
        return self._client if self._client is not None else get_async_client()

    async def apply_rate_limit(self):
        await self.rate_limiter.wait()

    async def execute_with_retry(self, operation: Callable[[], Awaitable[T]], retries: Optional[int] = None) -> T:
        """
        Run `operation` up to retries + 1 times.

        The rate limit is applied before every attempt; after failed attempt i the
        executor sleeps retry_delay_ms * 2**i. The last error is raised when all
        attempts fail.
        """
        retries = self.max_retries if retries is None else retries
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            await self.apply_rate_limit()
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if attempt < retries:
                    delay_ms = self.retry_delay_ms * (2 ** attempt)
                    logger.warning(f"Request failed (attempt {attempt + 1}/{retries + 1}), retrying in {delay_ms}ms: {e}")
                    await asyncio.sleep(delay_ms / 1000)

        raise last_error

    async def fetch(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Single raw call with no rate limit or retry (credential handshakes)."""
        return await self.client.request(method, url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
    ) -> Any:
        """Retried request returning parsed JSON (None for empty bodies)."""

        async def send():
            response = await self.client.request(
                method, url, headers=headers, json=json, params=params, content=content
            )
            if not response.is_success:
                raise ProviderRequestError(
                    f"HTTP {response.status_code}: {response.text}",
                    status_code=response.status_code,
                    response_text=response.text,
                )
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        return await self.execute_with_retry(send)


def basic_credentials(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return f"Basic {token}"


def build_auth_headers(auth: AuthData, provider: str) -> Dict[str, str]:
    """Request signing by auth type, with provider-specific API key schemes."""
    headers = {'Content-Type': 'application/json'}

    if auth.type == 'oauth':
        headers['Authorization'] = f"Bearer {auth.access_token}"
    elif auth.type == 'api_key':
        if provider == PROVIDER_AZURE_DEVOPS:
            headers['Authorization'] = basic_credentials('', auth.api_key or '')
        elif provider == PROVIDER_GITHUB:
            headers['Authorization'] = f"token {auth.api_key}"
        else:
            headers['X-API-Key'] = auth.api_key or ''
    elif auth.type == 'basic':
        headers['Authorization'] = basic_credentials(auth.username or '', auth.password or '')

    return headers
