"""Google Books catalog adapter."""
import logging
from typing import List, Optional, Dict, Any

from bookcache.async_client import AsyncCatalogClient
from bookcache.errors import MalformedUpstreamResponse
from bookcache.models import SOURCE_GOOGLE_BOOKS

logger = logging.getLogger(__name__)

MAX_RESULTS_LIMIT = 40  # API limit


class GoogleBooksAdapter(AsyncCatalogClient):
    """Secondary catalog: Google Books volume search and lookup."""

    SOURCE = SOURCE_GOOGLE_BOOKS

    def __init__(
        self,
        base_url: str = "https://www.googleapis.com/books/v1",
        api_key: Optional[str] = None,
        **kwargs
    ):
        """
        Args:
            base_url: API root, without the /volumes suffix
            api_key: Optional API key (increases rate limits)
        """
        super().__init__(base_url, **kwargs)
        self.api_key = api_key

    def _params(self, **params) -> Dict[str, Any]:
        if self.api_key:
            params["key"] = self.api_key
        return params

    async def search(
        self,
        query: str,
        limit: int = 20,
        author: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Search volumes by title, optionally narrowed by author.

        Returns:
            Raw volume items (empty list when nothing matches)
        """
        search_query = f"intitle:{query}"
        if author and author.strip():
            search_query += f"+inauthor:{author.strip()}"

        params = self._params(
            q=search_query,
            maxResults=min(limit, MAX_RESULTS_LIMIT),
            orderBy="relevance"
        )
        return self._items(await self.get_json("/volumes", params))

    async def search_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        """First volume for an ISBN, or None."""
        params = self._params(q=f"isbn:{isbn}", maxResults=1)
        items = self._items(await self.get_json("/volumes", params))
        return items[0] if items else None

    async def get_by_identity(self, volume_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one volume by its Google Books id, or None."""
        return await self.get_json(f"/volumes/{volume_id}", self._params())

    def _items(self, data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        items = (data or {}).get("items") or []
        if not isinstance(items, list):
            raise MalformedUpstreamResponse(self.SOURCE, "'items' is not a list")
        return items
