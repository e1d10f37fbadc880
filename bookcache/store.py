"""
Cache of canonical books on top of a BookRepository.

Records are looked up by natural key in a fixed priority order, refreshed
in place when they already exist, and inserted optimistically otherwise.
An insert that loses a unique-key race is answered with the winner's
record. Fields curated by an AI pass are never overwritten unless forced.
"""
import logging
import re
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from bookcache.database import BookRepository, KEY_COLUMNS
from bookcache.enhance import MetadataEnhancer, enhance_book
from bookcache.errors import InvalidBookRecord, PersistenceError
from bookcache.models import CacheRecord, IdentityConflict, IdentityKeys, NormalizedBook
from bookcache.parse import MAX_CATEGORIES

logger = logging.getLogger(__name__)

STALE_DAYS = 30

# Curated by the AI pass; refreshes skip them unless forced
PROTECTED_FIELDS = ("description", "categories", "publisher", "published_year")

# Natural keys are filled when missing but never replaced
KEY_FIELDS = ("primary_catalog_key", "secondary_catalog_key", "isbn13", "isbn10")

UPDATABLE_FIELDS = KEY_FIELDS + (
    "title",
    "authors",
    "publisher",
    "published_year",
    "description",
    "page_count",
    "cover_url",
    "categories",
    "language",
    "popularity_score",
    "ratings_average",
    "ratings_count",
)

_YEAR = re.compile(r"^\d{4}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _empty(value) -> bool:
    return value is None or value == "" or value == []


class CacheStore:
    """Persistence-facing operations for canonical books."""

    def __init__(
        self,
        repository: BookRepository,
        stale_days: int = STALE_DAYS,
        enhancer: Optional[MetadataEnhancer] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            repository: Book storage
            stale_days: Age after which a record is due for refresh
            enhancer: Optional AI metadata pass run on first insert
            clock: Source of "now"
        """
        self.repository = repository
        self.stale_days = stale_days
        self.enhancer = enhancer
        self.clock = clock

    def find_by_identity(self, keys: IdentityKeys) -> Optional[CacheRecord]:
        """
        First record matching isbn13, then isbn10, then the primary catalog key.

        Stale records are returned too; callers check is_stale().
        """
        for field, value in keys.items():
            record = self.repository.find_by_key(field, value)
            if record is not None:
                return record
        return None

    def is_stale(self, record: CacheRecord, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return now > record.last_updated + timedelta(days=self.stale_days)

    def upsert(
        self,
        keys: IdentityKeys,
        book: NormalizedBook,
        force: bool = False
    ) -> CacheRecord:
        """
        Update the record reachable by any identity key, or insert a new one.

        Args:
            keys: Natural keys to look the book up by
            book: Fresh book data
            force: Overwrite AI-curated fields too

        Returns:
            The stored record

        Raises:
            InvalidBookRecord: book has no title or no identity
            PersistenceError: insert conflicted and the winner could not be read
        """
        book = self._checked(book)

        existing = self._lookup(keys, book)
        if existing is not None:
            record, _ = self._update(existing, book, force=force)
            return record

        return self._insert(keys, book)

    def promote(self, book: NormalizedBook) -> CacheRecord:
        """
        Get or create the stored record for a book a user acted on.

        Existing records are returned untouched; refreshing is a separate
        concern from adding a book to a list.
        """
        if book.record_id:
            record = self.repository.find_by_id(book.record_id)
            if record is not None:
                return record

        book = self._checked(book)
        keys = IdentityKeys.from_book(book)

        existing = self._lookup(keys, book)
        if existing is not None:
            return existing

        logger.info(f"Creating new book: {book.title}")
        return self._insert(keys, book)

    def search_local(
        self,
        query: str,
        author: Optional[str] = None,
        limit: int = 20
    ) -> List[NormalizedBook]:
        """Stored books matching the query, as books carrying their record id."""
        query = query.strip()
        if not query:
            return []

        records = self.repository.search(query, limit=limit * 5 if author else limit)

        if author and author.strip():
            wanted = author.strip().lower()
            records = [
                r for r in records
                if any(wanted in name.lower() for name in r.book.authors)
            ]

        return [record.to_book() for record in records[:limit]]

    def apply_refresh(
        self,
        record: CacheRecord,
        fresh: NormalizedBook,
        force: bool = False,
        dry_run: bool = False
    ) -> Tuple[CacheRecord, List[str]]:
        """
        Fill fields the record is missing from fresh catalog data.

        Args:
            record: Stored record
            fresh: Newly normalized data for the same work
            force: Replace present values too; AI-curated fields are always kept
            dry_run: Compute changes without writing

        Returns:
            (record, names of changed fields); nothing is written when the
            change list is empty
        """
        changed, changes = self._merge_fields(record, fresh, force=force, only_missing=True)
        if not changes or dry_run:
            return record, changes

        changed = replace(changed, last_updated=self.clock())
        return self.repository.update(changed), changes

    def _lookup(self, keys: IdentityKeys, book: NormalizedBook) -> Optional[CacheRecord]:
        existing = self.find_by_identity(keys)
        if existing is None and book.secondary_catalog_key:
            existing = self.repository.find_by_key("secondary_catalog_key", book.secondary_catalog_key)
        return existing

    def _checked(self, book: NormalizedBook) -> NormalizedBook:
        if not book.title or not book.title.strip():
            raise InvalidBookRecord("book has no title")
        if not book.is_identifiable():
            raise InvalidBookRecord(f"book '{book.title}' has no identity key")

        updates = {}
        if len(book.categories) > MAX_CATEGORIES:
            updates["categories"] = book.categories[:MAX_CATEGORIES]
        if book.published_year and not _YEAR.match(book.published_year):
            logger.warning(f"Dropping invalid published year {book.published_year!r} for {book.title}")
            updates["published_year"] = None
        return replace(book, **updates) if updates else book

    def _update(
        self,
        existing: CacheRecord,
        book: NormalizedBook,
        force: bool
    ) -> Tuple[CacheRecord, List[str]]:
        changed, changes = self._merge_fields(existing, book, force=force, only_missing=False)
        changed = replace(changed, last_updated=self.clock())
        return self.repository.update(changed), changes

    def _merge_fields(
        self,
        record: CacheRecord,
        fresh: NormalizedBook,
        force: bool,
        only_missing: bool
    ) -> Tuple[CacheRecord, List[str]]:
        current = record.book
        updates = {}

        for name in UPDATABLE_FIELDS:
            new = getattr(fresh, name)
            old = getattr(current, name)
            if _empty(new) or new == old:
                continue
            if record.ai_enhanced and name in PROTECTED_FIELDS and (only_missing or not force):
                continue
            if name in KEY_FIELDS and not _empty(old):
                continue
            if only_missing and not force and not _empty(old):
                continue
            updates[name] = new

        if not updates:
            return record, []
        return replace(record, book=replace(current, **updates)), sorted(updates)

    def _insert(self, keys: IdentityKeys, book: NormalizedBook) -> CacheRecord:
        enhanced = enhance_book(book, self.enhancer) if self.enhancer else None
        now = self.clock()

        if enhanced:
            result = self.repository.insert(
                replace(book, **enhanced), now, ai_enhanced=True, ai_enhanced_at=now
            )
        else:
            result = self.repository.insert(book, now)

        if not isinstance(result, IdentityConflict):
            return result

        # Lost the race: one lookup by the conflicting key, then give up
        logger.info(f"Identity conflict on {result.field}={result.value}, reading winner")
        winner = None
        if result.field in KEY_COLUMNS:
            winner = self.repository.find_by_key(result.field, result.value)
        if winner is None:
            winner = self._lookup(keys, book)
        if winner is None:
            raise PersistenceError("insert conflicted but no record was found", key=f"{result.field}:{result.value}")
        return winner
