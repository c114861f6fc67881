"""
Directory Client Base

Async HTTP plumbing shared by the Google Workspace and Microsoft Graph
directory clients:

- Access token refresh before every call (via OAuthTokenManager)
- Full pagination of listing endpoints
- Per-page retries with exponential backoff, honoring Retry-After on 429
- 401/403 surfaced immediately as CredentialError

Usage:
    async with GoogleDirectoryClient(token_manager) as client:
        snapshot = await client.fetch_snapshot()
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from src.config.settings import settings
from src.shadow_it_sync.providers.credentials import OAuthTokenManager
from src.shadow_it_sync.providers.snapshot import DirectorySnapshot
from src.shadow_it_sync.sync.cache import TTLCache
from src.shadow_it_sync.sync.pool import BoundedWorkerPool
from src.utils.error_handling import CredentialError, ProviderError, ProviderTransientError
from src.utils.logging import get_logger

logger = get_logger(__name__)

PageRequest = Tuple[str, Optional[Dict[str, Any]]]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class DirectoryClient(ABC):
    """
    Base class for provider directory clients.

    Subclasses implement `fetch_snapshot` and `_next_page`; everything that
    talks HTTP goes through `_get_json`, which tests replace with a stub.
    """

    provider: str = ""

    # Safety limit per listing
    MAX_PAGES: int = 1000

    def __init__(
        self,
        token_manager: OAuthTokenManager,
        pool: Optional[BoundedWorkerPool] = None,
        cache: Optional[TTLCache] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        timeout: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.token_manager = token_manager
        self.pool = pool or BoundedWorkerPool(
            concurrency_limit=settings.PROVIDER_CONCURRENCY_LIMIT,
            call_delay=settings.PROVIDER_CALL_DELAY_SECONDS,
            name=self.provider or "provider",
        )
        self.cache = cache or TTLCache(settings.TOKEN_CACHE_TTL_SECONDS)
        self.max_retries = settings.PAGE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.PAGE_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None
        self.request_count = 0

    async def __aenter__(self):
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._session:
            await self._session.close()
        self._session = None

    @abstractmethod
    async def fetch_snapshot(self) -> DirectorySnapshot:
        """Fetch users, groups, assignments and token grants for the organization."""

    @abstractmethod
    def _next_page(self, payload: Dict[str, Any], url: str,
                   params: Optional[Dict[str, Any]]) -> Optional[PageRequest]:
        """Return the request for the following page, or None on the last page."""

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_manager.get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Single GET request.

        Raises:
            CredentialError: 401 or 403
            ProviderTransientError: 429, 5xx, timeouts and connection errors
            ProviderError: any other non-success status
        """
        if self._session is None:
            raise ProviderError(f"{self.__class__.__name__} used outside 'async with'", endpoint=url)

        headers = await self._auth_headers()
        self.request_count += 1
        try:
            async with self._session.get(url, params=params, headers=headers) as response:
                if response.status in (401, 403):
                    body = await response.text()
                    raise CredentialError(
                        f"{self.provider} refused access ({response.status}): {body[:200]}",
                        status_code=response.status,
                        endpoint=url,
                    )
                if response.status == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    raise ProviderTransientError(
                        f"Rate limit exceeded on {url}",
                        retry_after=retry_after,
                        status_code=429,
                        endpoint=url,
                    )
                if response.status >= 500:
                    raise ProviderTransientError(
                        f"{self.provider} returned {response.status}",
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                        status_code=response.status,
                        endpoint=url,
                    )
                if response.status >= 400:
                    body = await response.text()
                    raise ProviderError(
                        f"{self.provider} returned {response.status}: {body[:200]}",
                        status_code=response.status,
                        endpoint=url,
                    )
                return await response.json(content_type=None) or {}
        except asyncio.TimeoutError as e:
            raise ProviderTransientError(
                f"Request timeout after {self.timeout} seconds", endpoint=url, original_exception=e
            )
        except aiohttp.ClientError as e:
            raise ProviderTransientError(f"Network error: {e}", endpoint=url, original_exception=e)

    async def _fetch_page(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fetch one page, retrying transient failures with backoff."""
        attempt = 0
        while True:
            try:
                return await self._get_json(url, params)
            except ProviderTransientError as e:
                if attempt >= self.max_retries:
                    logger.error(f"All {self.max_retries} retries exhausted for {url}")
                    raise ProviderTransientError(
                        f"Request to {url} failed after {attempt + 1} attempts: {e.message}",
                        retry_after=e.retry_after,
                        attempts=attempt + 1,
                        status_code=e.status_code,
                        endpoint=url,
                        original_exception=e,
                    )
                delay = e.retry_after if e.retry_after is not None else self.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Transient failure on {url} ({e.message}); retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _paginate(self, url: str, params: Optional[Dict[str, Any]] = None,
                        items_key: str = "value") -> List[Dict[str, Any]]:
        """Collect `items_key` from every page of a listing."""
        results: List[Dict[str, Any]] = []
        request: Optional[PageRequest] = (url, dict(params) if params else None)
        pages = 0
        while request and pages < self.MAX_PAGES:
            page_url, page_params = request
            payload = await self._fetch_page(page_url, page_params)
            results.extend(payload.get(items_key) or [])
            pages += 1
            request = self._next_page(payload, page_url, page_params)
        if request:
            # A truncated listing would read as deleted users downstream
            raise ProviderError(
                f"Listing {url} exceeded {self.MAX_PAGES} pages",
                endpoint=url,
                context={"max_pages": self.MAX_PAGES},
            )
        logger.debug(f"Fetched {len(results)} items from {url} in {pages} pages")
        return results
