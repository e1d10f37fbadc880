"""Shared in-memory fakes for the repositories and catalogs."""
import asyncio
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from bookcache.database import KEY_COLUMNS
from bookcache.errors import PersistenceError, UpstreamUnavailable
from bookcache.models import CacheRecord, IdentityConflict
from bookcache.store import CacheStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryBookRepository:
    """BookRepository with the same unique-key rules as the books table."""

    def __init__(self):
        self.records = {}
        self.lock = threading.Lock()
        self.next_id = 1
        self.inserts = 0

    def find_by_id(self, record_id):
        return self.records.get(record_id)

    def find_by_key(self, field, value):
        for record in list(self.records.values()):
            if getattr(record.book, field) == value:
                return record
        return None

    def _taken(self, book, record_id=None):
        for field in KEY_COLUMNS:
            value = getattr(book, field)
            if not value:
                continue
            for record in self.records.values():
                if record.id != record_id and getattr(record.book, field) == value:
                    return IdentityConflict(field=field, value=value)
        return None

    def insert(self, book, last_updated, ai_enhanced=False, ai_enhanced_at=None):
        with self.lock:
            self.inserts += 1
            conflict = self._taken(book)
            if conflict:
                return conflict

            record = CacheRecord(
                id=f"rec-{self.next_id}",
                book=replace(book, source="cache", record_id=None),
                last_updated=last_updated,
                ai_enhanced=ai_enhanced,
                ai_enhanced_at=ai_enhanced_at,
            )
            self.next_id += 1
            self.records[record.id] = record
            return record

    def update(self, record):
        with self.lock:
            conflict = self._taken(record.book, record.id)
            if conflict:
                raise PersistenceError("update collides", key=f"{conflict.field}:{conflict.value}")
            self.records[record.id] = record
            return record

    def search(self, query, limit=20):
        query = query.lower()
        return [
            record for record in self.records.values()
            if query in record.book.title.lower()
            or any(query in author.lower() for author in record.book.authors)
        ][:limit]

    def oldest(self, limit=None, missing_only=False):
        records = sorted(self.records.values(), key=lambda r: r.last_updated)
        if missing_only:
            records = [
                r for r in records
                if r.book.page_count is None or r.book.description is None
                or r.book.primary_catalog_key is None
            ]
        return records[:limit] if limit is not None else records

    def count(self, updated_before=None):
        if updated_before is None:
            return len(self.records)
        return sum(1 for r in self.records.values() if r.last_updated < updated_before)


class RacingBookRepository(InMemoryBookRepository):
    """Holds the first two inserts until both writers have missed their lookups."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)
        self.arrivals = 0

    def insert(self, book, last_updated, ai_enhanced=False, ai_enhanced_at=None):
        with self.lock:
            self.arrivals += 1
            racing = self.arrivals <= 2
        if racing:
            self.barrier.wait()
        return super().insert(book, last_updated, ai_enhanced, ai_enhanced_at)


class InMemoryRecommendationCacheRepository:
    def __init__(self):
        self.entries = {}
        self.saves = 0

    def get(self, user_id):
        return self.entries.get(user_id)

    def save(self, entry):
        self.saves += 1
        self.entries[entry.user_id] = entry
        return entry

    def increment_activity(self, user_id):
        entry = self.entries.get(user_id)
        if entry is None:
            return None
        self.entries[user_id] = replace(entry, activity_counter=entry.activity_counter + 1)
        return entry.activity_counter + 1

    def count(self):
        return len(self.entries)


class FakeCatalog:
    """Catalog adapter returning canned raw records."""

    def __init__(self, source, results=None, isbn_results=None, error=None, delay=0):
        self.SOURCE = source
        self.results = results or []
        self.isbn_results = isbn_results or {}
        self.error = error
        self.delay = delay
        self.search_calls = []
        self.isbn_calls = []
        self.cancelled = False

    async def _wait(self):
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    async def search(self, query, limit=20, author=None):
        self.search_calls.append((query, limit, author))
        await self._wait()
        if self.error:
            raise self.error
        return list(self.results[:limit])

    async def search_by_isbn(self, isbn):
        self.isbn_calls.append(isbn)
        await self._wait()
        if self.error:
            raise self.error
        return self.isbn_results.get(isbn)


class FakeRatings:
    def __init__(self, rated=None, known=None):
        self.rated = rated or []
        self.known = set(known or [])

    def high_ratings(self, user_id, min_rating, limit):
        return [r for r in self.rated if r.rating >= min_rating][:limit]

    def known_book_keys(self, user_id):
        return set(self.known)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def book_repo():
    return InMemoryBookRepository()


@pytest.fixture
def racing_repo():
    return RacingBookRepository()


@pytest.fixture
def store(book_repo, clock):
    return CacheStore(book_repo, clock=clock)


@pytest.fixture
def rec_repo():
    return InMemoryRecommendationCacheRepository()


@pytest.fixture
def make_catalog():
    return FakeCatalog


@pytest.fixture
def make_ratings():
    return FakeRatings


@pytest.fixture
def unavailable():
    """Factory for the error a failing catalog raises."""
    return lambda source: UpstreamUnavailable(source, "status 503")
