"""
Bulk refresh of cached books from the primary catalog.

Runs incrementally over the oldest records and only fills data that is
missing; AI-curated fields are left alone. Requests are spaced by a fixed
delay because the catalogs do not rate-limit callers on our behalf.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bookcache.errors import BookCacheError, UpstreamUnavailable, MalformedUpstreamResponse
from bookcache.models import CacheRecord, NormalizedBook, SOURCE_OPEN_LIBRARY
from bookcache.parse import normalize_many
from bookcache.search import CatalogAdapter
from bookcache.store import CacheStore

logger = logging.getLogger(__name__)

STATUS_UPDATED = "updated"
STATUS_SKIPPED = "skipped"
STATUS_NOT_FOUND = "not_found"
STATUS_ERROR = "error"

TITLE_SEARCH_LIMIT = 5
TITLE_PREFIX_LENGTH = 10


@dataclass
class RefreshResult:
    """Outcome for one book."""
    record_id: str
    title: str
    status: str = STATUS_SKIPPED
    changes: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RefreshReport:
    """Outcome of a refresh run."""
    results: List[RefreshResult] = field(default_factory=list)
    dry_run: bool = False

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            status: self.count(status)
            for status in (STATUS_UPDATED, STATUS_SKIPPED, STATUS_NOT_FOUND, STATUS_ERROR)
        }


def pick_title_match(docs: List[Dict[str, Any]], title: str) -> Optional[Dict[str, Any]]:
    """
    Best search doc for a stored title.

    An exact (case-insensitive) title wins; otherwise the first doc is
    accepted when its title contains the first characters of ours.
    """
    wanted = title.lower()
    for doc in docs:
        if str(doc.get("title", "")).lower() == wanted:
            return doc

    if docs and wanted[:TITLE_PREFIX_LENGTH] in str(docs[0].get("title", "")).lower():
        return docs[0]
    return None


class BookRefresher:
    """Fills missing data on stored books, oldest first."""

    def __init__(
        self,
        store: CacheStore,
        primary: CatalogAdapter,
        delay_seconds: float = 1.0
    ):
        """
        Args:
            store: Cache store holding the records
            primary: Catalog to refresh from
            delay_seconds: Pause between books
        """
        self.store = store
        self.primary = primary
        self.delay_seconds = delay_seconds

    async def run(
        self,
        limit: Optional[int] = None,
        missing_only: bool = False,
        dry_run: bool = False,
        force: bool = False
    ) -> RefreshReport:
        """
        Refresh stored books.

        Args:
            limit: Process at most this many books
            missing_only: Only books lacking page count, description or catalog key
            dry_run: Report changes without writing them
            force: Include fresh records and replace present values

        Returns:
            RefreshReport with one result per processed book
        """
        records = self.store.repository.oldest(limit=limit, missing_only=missing_only)
        if not force:
            # Oldest first, so everything after the first fresh record is fresh too
            records = [r for r in records if self.store.is_stale(r)]

        logger.info(
            f"Refreshing {len(records)} books "
            f"(dry_run={dry_run}, force={force}, missing_only={missing_only})"
        )

        report = RefreshReport(dry_run=dry_run)
        for index, record in enumerate(records):
            result = await self.refresh_record(record, dry_run=dry_run, force=force)
            report.results.append(result)
            logger.info(f"[{index + 1}/{len(records)}] {record.book.title}: {result.status}")

            if index < len(records) - 1 and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

        logger.info(f"Refresh finished: {report.summary}")
        return report

    async def refresh_record(
        self,
        record: CacheRecord,
        dry_run: bool = False,
        force: bool = False
    ) -> RefreshResult:
        result = RefreshResult(record_id=record.id, title=record.book.title)

        try:
            fresh = await self.lookup(record.book)
            if fresh is None:
                result.status = STATUS_NOT_FOUND
                return result

            _, changes = self.store.apply_refresh(record, fresh, force=force, dry_run=dry_run)
        except BookCacheError as e:
            logger.error(f"Error refreshing {record.book.title}: {e}")
            result.status = STATUS_ERROR
            result.error = str(e)
            return result

        result.changes = changes
        result.status = STATUS_UPDATED if changes else STATUS_SKIPPED
        if dry_run and changes:
            logger.info(f"[DRY RUN] Would update '{record.book.title}': {', '.join(changes)}")
        return result

    async def lookup(self, book: NormalizedBook) -> Optional[NormalizedBook]:
        """Find a book in the catalog by ISBN-13, ISBN-10, then title and author."""
        for isbn in (book.isbn13, book.isbn10):
            if not isbn:
                continue
            doc = await self._catalog_call(self.primary.search_by_isbn(isbn))
            if doc:
                found = normalize_many([doc], SOURCE_OPEN_LIBRARY)
                if found:
                    return found[0]

        author = book.authors[0] if book.authors else None
        docs = await self._catalog_call(
            self.primary.search(book.title, limit=TITLE_SEARCH_LIMIT, author=author)
        )
        doc = pick_title_match(docs or [], book.title)
        if doc is None:
            return None

        found = normalize_many([doc], SOURCE_OPEN_LIBRARY)
        return found[0] if found else None

    async def _catalog_call(self, call):
        try:
            return await call
        except (UpstreamUnavailable, MalformedUpstreamResponse) as e:
            logger.warning(f"Catalog lookup failed: {e}")
            return None
