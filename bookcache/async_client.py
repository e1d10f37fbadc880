"""Async HTTP client shared by the catalog adapters."""
import asyncio
import random
import httpx
from typing import Optional, Dict, Any
import logging

from bookcache.errors import UpstreamUnavailable, MalformedUpstreamResponse

logger = logging.getLogger(__name__)

USER_AGENT = "bookcache/0.1 (book-identity-cache)"


class AsyncCatalogClient:
    """Async client with timeouts, bounded concurrency, retries and backoff."""

    SOURCE = "catalog"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10,
        max_retries: int = 3,
        base_backoff: float = 1.0,
        max_concurrent: int = 5,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize async client.

        Args:
            base_url: Catalog base URL
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts per request
            base_backoff: Base delay for exponential backoff
            max_concurrent: Maximum concurrent requests
            client: Pre-built httpx client (tests inject a MockTransport here)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_backoff = base_backoff
        self.semaphore = asyncio.Semaphore(max_concurrent)

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT}
        )

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        GET a JSON document.

        Args:
            path: Path relative to the base URL
            params: Query parameters

        Returns:
            Decoded JSON, or None when the catalog answers 404

        Raises:
            UpstreamUnavailable: network error, timeout, or non-2xx after retries
            MalformedUpstreamResponse: body is not a JSON object
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_error = ""

        for attempt in range(self.max_retries):
            try:
                async with self.semaphore:
                    logger.debug(f"{self.SOURCE} request attempt {attempt + 1}/{self.max_retries}: {url}")
                    response = await self.client.get(url, params=params, timeout=self.timeout)
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning(f"{self.SOURCE} timeout on attempt {attempt + 1}")
            except httpx.TransportError as e:
                last_error = f"connection error: {e}"
                logger.warning(f"{self.SOURCE} connection error on attempt {attempt + 1}: {e}")
            else:
                if 200 <= response.status_code < 300:
                    return self._decode(response)

                if response.status_code == 404:
                    return None

                last_error = f"status {response.status_code}"
                if response.status_code == 429 or response.status_code >= 500:
                    # Rate limited or server error - retryable
                    logger.warning(f"{self.SOURCE} returned {response.status_code} on attempt {attempt + 1}")
                else:
                    # Client error - don't retry
                    logger.error(f"{self.SOURCE} client error ({response.status_code}) for {url}")
                    raise UpstreamUnavailable(self.SOURCE, last_error)

            if attempt < self.max_retries - 1:
                await self._backoff(attempt)

        logger.error(f"{self.SOURCE}: all {self.max_retries} attempts failed ({last_error})")
        raise UpstreamUnavailable(self.SOURCE, last_error)

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedUpstreamResponse(self.SOURCE, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedUpstreamResponse(self.SOURCE, "expected a JSON object")
        return data

    async def _backoff(self, attempt: int):
        """
        Sleep with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        delay = self.base_backoff * (2 ** attempt)
        total_delay = delay + random.uniform(0, delay)

        logger.info(f"Backing off for {total_delay:.2f} seconds")
        await asyncio.sleep(total_delay)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
