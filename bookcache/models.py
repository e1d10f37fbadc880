"""Data models for books, cache records and recommendation caches."""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List

SOURCE_CACHE = "cache"
SOURCE_OPEN_LIBRARY = "openlibrary"
SOURCE_GOOGLE_BOOKS = "googlebooks"


@dataclass
class NormalizedBook:
    """Canonical book representation shared by every catalog."""
    title: str
    authors: List[str] = field(default_factory=list)
    primary_catalog_key: Optional[str] = None
    secondary_catalog_key: Optional[str] = None
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[str] = None
    description: Optional[str] = None
    page_count: Optional[int] = None
    cover_url: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    language: Optional[str] = None
    popularity_score: Optional[int] = None
    ratings_average: Optional[float] = None
    ratings_count: Optional[int] = None
    source: str = SOURCE_OPEN_LIBRARY
    record_id: Optional[str] = None
    last_updated: Optional[datetime] = None

    @property
    def authors_str(self) -> str:
        """Format authors as comma-separated string."""
        return ", ".join(self.authors) if self.authors else "Unknown"

    @property
    def categories_str(self) -> str:
        """Format categories as comma-separated string."""
        return ", ".join(self.categories) if self.categories else "None"

    @property
    def book_key(self) -> Optional[str]:
        """Most stable external key for this book."""
        return self.primary_catalog_key or self.secondary_catalog_key or self.isbn13 or self.isbn10

    def is_identifiable(self) -> bool:
        return bool(
            self.primary_catalog_key or self.secondary_catalog_key or self.isbn13 or self.isbn10
        )


@dataclass
class IdentityKeys:
    """Natural keys a cached book can be reached by, in lookup priority order."""
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    primary_catalog_key: Optional[str] = None

    @classmethod
    def from_book(cls, book: NormalizedBook) -> "IdentityKeys":
        return cls(
            isbn13=book.isbn13,
            isbn10=book.isbn10,
            primary_catalog_key=book.primary_catalog_key,
        )

    def items(self):
        """Yield (field, value) pairs that are set, highest priority first."""
        for name in ("isbn13", "isbn10", "primary_catalog_key"):
            value = getattr(self, name)
            if value:
                yield name, value


@dataclass
class IdentityConflict:
    """Insert lost a unique-key race against a concurrent writer."""
    field: str
    value: str


@dataclass
class CacheRecord:
    """Persisted book plus its store identity."""
    id: str
    book: NormalizedBook
    last_updated: datetime
    ai_enhanced: bool = False
    ai_enhanced_at: Optional[datetime] = None

    def to_book(self) -> NormalizedBook:
        """Book view carrying the storage id, as served by local search."""
        return replace(
            self.book,
            source=SOURCE_CACHE,
            record_id=self.id,
            last_updated=self.last_updated,
        )


@dataclass
class Recommendation:
    """One resolved recommendation shown to a reader."""
    book_key: str
    title: str
    authors: List[str]
    reason: str
    blurb: str
    cover_url: Optional[str] = None


@dataclass
class RecommendationDraft:
    """Unresolved suggestion as produced by the text generator."""
    title: str
    authors: List[str]
    reason: str = ""
    blurb: str = ""


@dataclass
class RatedBook:
    """A highly rated book from a reader's history."""
    title: str
    authors: List[str]
    rating: float
    categories: List[str] = field(default_factory=list)
    book_key: Optional[str] = None


@dataclass
class RecommendationCacheEntry:
    """Cached recommendation list for one reader."""
    user_id: str
    recommendations: List[Recommendation]
    generated_at: datetime
    expires_at: datetime
    activity_counter: int = 0
    last_auto_refresh_at: Optional[datetime] = None
