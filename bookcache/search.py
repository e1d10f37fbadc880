"""
Hybrid search over the local cache and the two catalogs.

A query is answered from the cache when it holds enough matches. Otherwise
the primary catalog is asked, and the secondary catalog only when the
primary fails or still leaves the result short. Cached books always lead
the merged result because they carry the store id needed to add them to a
list.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from bookcache.dedupe import merge
from bookcache.errors import AllSourcesUnavailable, UpstreamUnavailable, MalformedUpstreamResponse
from bookcache.isbn import clean_isbn, is_valid_isbn
from bookcache.models import (
    IdentityKeys,
    NormalizedBook,
    SOURCE_GOOGLE_BOOKS,
    SOURCE_OPEN_LIBRARY,
)
from bookcache.parse import normalize_many
from bookcache.relevance import rank
from bookcache.store import CacheStore

logger = logging.getLogger(__name__)

MIN_RESULTS = 5

# A catalog that is down counts as failed; a malformed answer counts as empty
CATALOG_ERRORS = (UpstreamUnavailable,)


class CatalogAdapter(Protocol):
    """What the orchestrator needs from a catalog."""

    SOURCE: str

    async def search(
        self,
        query: str,
        limit: int = 20,
        author: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...

    async def search_by_isbn(self, isbn: str) -> Optional[Dict[str, Any]]: ...


class SearchOrchestrator:
    """Answers searches from the cache first, then the catalogs."""

    def __init__(
        self,
        store: CacheStore,
        primary: CatalogAdapter,
        secondary: CatalogAdapter,
        min_results: int = MIN_RESULTS
    ):
        """
        Args:
            store: Local cache of canonical books
            primary: Works catalog, consulted first
            secondary: Volume catalog, consulted as fallback or supplement
            min_results: Result count that makes a step sufficient
        """
        self.store = store
        self.primary = primary
        self.secondary = secondary
        self.min_results = min_results

    async def search(
        self,
        query: str,
        limit: int = 20,
        author: Optional[str] = None
    ) -> List[NormalizedBook]:
        """
        Search for books.

        Args:
            query: Free-text query, usually a title
            limit: Max results to return
            author: Optional author filter

        Returns:
            Cached matches first, then catalog matches by relevance, one per work

        Raises:
            AllSourcesUnavailable: both catalogs failed and nothing is cached
        """
        query = query.strip()
        if not query:
            return []

        needed = min(self.min_results, limit)

        local = self.store.search_local(query, author=author, limit=limit)
        if len(local) >= needed:
            logger.info(f"Search '{query}': {len(local)} cached results, catalogs skipped")
            return local[:limit]

        errors: Dict[str, Exception] = {}
        fetched: List[NormalizedBook] = []

        primary = await self._fetch(self.primary, SOURCE_OPEN_LIBRARY, query, limit, author, errors)
        if primary is not None:
            fetched.extend(primary)

        if primary is None or len(merge(local + fetched)) < needed:
            secondary = await self._fetch(self.secondary, SOURCE_GOOGLE_BOOKS, query, limit, author, errors)
            if secondary is not None:
                fetched.extend(secondary)

            if primary is None and secondary is None:
                if not local:
                    raise AllSourcesUnavailable(errors)
                logger.warning(f"Search '{query}': all catalogs failed, serving {len(local)} cached results")
                return local[:limit]

        results = merge(local + rank(fetched, query, author))
        logger.info(f"Search '{query}': {len(local)} cached, {len(fetched)} fetched, {len(results)} after merge")
        return results[:limit]

    async def resolve_isbn(self, isbn: str) -> Optional[NormalizedBook]:
        """
        Look a book up by ISBN.

        A fresh cached record answers directly. Otherwise both catalogs are
        asked concurrently and their answers merged, primary first; a stale
        record is still served when both fail.

        Returns:
            The book, or None when no source knows the ISBN

        Raises:
            AllSourcesUnavailable: both catalogs failed and nothing is cached
        """
        isbn = clean_isbn(isbn)
        if not is_valid_isbn(isbn):
            logger.warning(f"Rejecting invalid ISBN {isbn!r}")
            return None

        if len(isbn) == 13:
            keys = IdentityKeys(isbn13=isbn)
        else:
            keys = IdentityKeys(isbn10=isbn)

        cached = self.store.find_by_identity(keys)
        if cached is not None and not self.store.is_stale(cached):
            return cached.to_book()

        primary_raw, secondary_raw = await asyncio.gather(
            self.primary.search_by_isbn(isbn),
            self.secondary.search_by_isbn(isbn),
            return_exceptions=True
        )

        errors: Dict[str, Exception] = {}
        candidates: List[NormalizedBook] = []
        for adapter, source, raw in (
            (self.primary, SOURCE_OPEN_LIBRARY, primary_raw),
            (self.secondary, SOURCE_GOOGLE_BOOKS, secondary_raw),
        ):
            if isinstance(raw, MalformedUpstreamResponse):
                logger.warning(f"ISBN {isbn}: {adapter.SOURCE} sent a malformed response: {raw}")
            elif isinstance(raw, CATALOG_ERRORS):
                logger.warning(f"ISBN {isbn}: {adapter.SOURCE} failed: {raw}")
                errors[adapter.SOURCE] = raw
            elif isinstance(raw, BaseException):
                raise raw
            elif raw is not None:
                candidates.extend(normalize_many([raw], source))

        if len(errors) == 2:
            if cached is not None:
                logger.warning(f"ISBN {isbn}: all catalogs failed, serving stale record {cached.id}")
                return cached.to_book()
            raise AllSourcesUnavailable(errors)

        if cached is not None:
            candidates.insert(0, cached.to_book())

        merged = merge(candidates)
        return merged[0] if merged else None

    async def _fetch(
        self,
        adapter: CatalogAdapter,
        source: str,
        query: str,
        limit: int,
        author: Optional[str],
        errors: Dict[str, Exception]
    ) -> Optional[List[NormalizedBook]]:
        """Normalized results of one catalog, or None if it is unavailable."""
        try:
            raws = await adapter.search(query, limit=limit, author=author)
        except CATALOG_ERRORS as e:
            logger.warning(f"{adapter.SOURCE} search failed for '{query}': {e}")
            errors[adapter.SOURCE] = e
            return None
        except MalformedUpstreamResponse as e:
            logger.warning(f"{adapter.SOURCE} sent a malformed response for '{query}': {e}")
            return []
        return normalize_many(raws, source)


class SearchSession:
    """
    Per-caller search state: a newer query supersedes the one in flight.

    The superseded task is cancelled, which aborts its HTTP requests, and a
    sequence number makes sure its result is never delivered.
    """

    def __init__(self, orchestrator: SearchOrchestrator):
        self.orchestrator = orchestrator
        self.sequence = 0
        self._task: Optional[asyncio.Task] = None

    async def search(
        self,
        query: str,
        limit: int = 20,
        author: Optional[str] = None
    ) -> Optional[List[NormalizedBook]]:
        """
        Run a search for this caller.

        Returns:
            The results, or None when a newer search superseded this one
        """
        self.sequence += 1
        ticket = self.sequence

        if self._task is not None and not self._task.done():
            logger.debug(f"Cancelling superseded search #{ticket - 1}")
            self._task.cancel()

        task = asyncio.ensure_future(self.orchestrator.search(query, limit=limit, author=author))
        self._task = task

        try:
            results = await task
        except asyncio.CancelledError:
            if ticket != self.sequence:
                return None
            raise

        if ticket != self.sequence:
            return None
        return results
