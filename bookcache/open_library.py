"""
Open Library catalog adapter.

Open Library is works-based: a work is the abstract book ("The Great
Gatsby") and editions are its printings. Search returns work-level docs;
detail lookups need the work, its editions and its authors, which are
separate documents.
"""
import asyncio
import logging
from typing import List, Optional, Dict, Any

from bookcache.async_client import AsyncCatalogClient
from bookcache.errors import UpstreamUnavailable, MalformedUpstreamResponse
from bookcache.models import SOURCE_OPEN_LIBRARY
from bookcache.parse import extract_key_id, select_best_edition

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ",".join([
    "key",
    "title",
    "author_name",
    "author_key",
    "first_publish_year",
    "isbn",
    "cover_i",
    "cover_edition_key",
    "edition_count",
    "number_of_pages_median",
    "publisher",
    "subject",
    "language",
    "ratings_average",
    "ratings_count",
    "want_to_read_count",
    "currently_reading_count",
    "already_read_count",
])

MAX_AUTHORS_TO_FETCH = 5


class OpenLibraryAdapter(AsyncCatalogClient):
    """Primary catalog: Open Library search, works, editions and authors."""

    SOURCE = SOURCE_OPEN_LIBRARY

    def __init__(self, base_url: str = "https://openlibrary.org", **kwargs):
        super().__init__(base_url, **kwargs)

    async def search(
        self,
        query: str,
        limit: int = 20,
        author: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Search works by free text.

        Args:
            query: Search query
            limit: Max docs to return
            author: Optional author filter

        Returns:
            Raw search docs (empty list when nothing matches)
        """
        search_query = query
        if author and author.strip():
            search_query = f"{query} author:{author.strip()}"

        params = {"q": search_query, "limit": limit, "fields": SEARCH_FIELDS}
        data = await self.get_json("/search.json", params)
        return self._docs(data)

    async def search_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]:
        """First search doc for an ISBN, or None."""
        params = {"isbn": isbn, "limit": 1, "fields": SEARCH_FIELDS}
        docs = self._docs(await self.get_json("/search.json", params))
        return docs[0] if docs else None

    async def get_work(self, work_key: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"/works/{extract_key_id(work_key)}.json")

    async def get_author(self, author_key: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"/authors/{extract_key_id(author_key)}.json")

    async def get_editions(self, work_key: str, limit: int = 10) -> List[Dict[str, Any]]:
        data = await self.get_json(
            f"/works/{extract_key_id(work_key)}/editions.json",
            {"limit": limit}
        )
        entries = (data or {}).get("entries") or []
        return [entry for entry in entries if isinstance(entry, dict)]

    async def get_by_identity(self, work_key: str) -> Optional[Dict[str, Any]]:
        """
        Fetch everything needed to normalize one work.

        The work and its edition list are fetched concurrently, then the
        author records in one concurrent batch. Edition and author failures
        degrade to missing data; only the work itself is required.

        Returns:
            {"work": ..., "edition": ..., "authors": [...]} or None if the
            work does not exist
        """
        work, editions = await asyncio.gather(
            self.get_work(work_key),
            self.get_editions(work_key),
            return_exceptions=True
        )

        if isinstance(work, BaseException):
            raise work
        if work is None:
            return None

        if isinstance(editions, BaseException):
            logger.warning(f"Editions for {work_key} unavailable: {editions}")
            editions = []

        author_keys = [
            ref.get("author", {}).get("key")
            for ref in work.get("authors") or []
            if isinstance(ref, dict)
        ]
        authors = await self._author_names([k for k in author_keys if k][:MAX_AUTHORS_TO_FETCH])

        return {
            "work": work,
            "edition": select_best_edition(editions),
            "authors": authors,
        }

    async def _author_names(self, author_keys: List[str]) -> List[str]:
        results = await asyncio.gather(
            *(self.get_author(key) for key in author_keys),
            return_exceptions=True
        )

        names = []
        for key, result in zip(author_keys, results):
            if isinstance(result, (UpstreamUnavailable, MalformedUpstreamResponse)):
                logger.warning(f"Author {key} unavailable: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            if result and result.get("name"):
                names.append(result["name"])
        return names

    def _docs(self, data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        docs = (data or {}).get("docs") or []
        if not isinstance(docs, list):
            raise MalformedUpstreamResponse(self.SOURCE, "'docs' is not a list")
        return docs
