"""Database layer: typed repositories for cached books and recommendation caches."""
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Optional, List, Union, Iterator, Protocol

import psycopg2
from psycopg2 import errors, pool

from bookcache.covers import ensure_default_false
from bookcache.errors import PersistenceError
from bookcache.models import (
    CacheRecord,
    IdentityConflict,
    NormalizedBook,
    Recommendation,
    RecommendationCacheEntry,
    SOURCE_CACHE,
)

logger = logging.getLogger(__name__)

# IdentityKeys field -> books column
KEY_COLUMNS = {
    "isbn13": "isbn_13",
    "isbn10": "isbn_10",
    "primary_catalog_key": "open_library_key",
    "secondary_catalog_key": "google_books_id",
}

BOOK_COLUMNS = """
    id, open_library_key, google_books_id, isbn_13, isbn_10, title, authors,
    publisher, published_year, description, page_count, cover_url, categories,
    language, popularity_score, ratings_average, ratings_count,
    ai_enhanced, ai_enhanced_at, last_updated
"""

INSERT_PLACEHOLDERS = ", ".join(["%s"] * 20)


class BookRepository(Protocol):
    """Storage for cached books, keyed by id and by natural keys."""

    def find_by_id(self, record_id: str) -> Optional[CacheRecord]: ...

    def find_by_key(self, field: str, value: str) -> Optional[CacheRecord]: ...

    def insert(
        self,
        book: NormalizedBook,
        last_updated: datetime,
        ai_enhanced: bool = False,
        ai_enhanced_at: Optional[datetime] = None
    ) -> Union[CacheRecord, IdentityConflict]: ...

    def update(self, record: CacheRecord) -> CacheRecord: ...

    def search(self, query: str, limit: int = 20) -> List[CacheRecord]: ...

    def oldest(self, limit: Optional[int] = None, missing_only: bool = False) -> List[CacheRecord]: ...

    def count(self, updated_before: Optional[datetime] = None) -> int: ...


class RecommendationCacheRepository(Protocol):
    """Storage for one recommendation cache entry per user."""

    def get(self, user_id: str) -> Optional[RecommendationCacheEntry]: ...

    def save(self, entry: RecommendationCacheEntry) -> RecommendationCacheEntry: ...

    def increment_activity(self, user_id: str) -> Optional[int]: ...

    def count(self) -> int: ...


class Database:
    """PostgreSQL database with connection pooling."""

    def __init__(self, connection_string: str, min_conn: int = 1, max_conn: int = 10):
        """
        Initialize database connection pool.

        Args:
            connection_string: PostgreSQL connection string
            min_conn: Minimum connections in pool
            max_conn: Maximum connections in pool
        """
        self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
            min_conn,
            max_conn,
            connection_string
        )
        logger.info("Database connection pool created successfully")

    @contextmanager
    def connection(self) -> Iterator["psycopg2.extensions.connection"]:
        """Borrow a pooled connection; roll back if the block raises."""
        conn = self.connection_pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self.connection_pool.putconn(conn)

    def init_schema(self):
        """Create database tables if they don't exist."""
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS books (
                        id UUID PRIMARY KEY,
                        open_library_key VARCHAR(64) UNIQUE,
                        google_books_id VARCHAR(64) UNIQUE,
                        isbn_13 VARCHAR(13) UNIQUE,
                        isbn_10 VARCHAR(10) UNIQUE,
                        title TEXT NOT NULL CHECK (title <> ''),
                        authors TEXT[] NOT NULL DEFAULT '{}',
                        publisher TEXT,
                        published_year VARCHAR(4) CHECK (published_year ~ '^[0-9]{4}$'),
                        description TEXT,
                        page_count INTEGER,
                        cover_url TEXT,
                        categories TEXT[] NOT NULL DEFAULT '{}'
                            CHECK (cardinality(categories) <= 5),
                        language VARCHAR(16),
                        popularity_score BIGINT,
                        ratings_average REAL,
                        ratings_count INTEGER,
                        ai_enhanced BOOLEAN NOT NULL DEFAULT FALSE,
                        ai_enhanced_at TIMESTAMPTZ,
                        last_updated TIMESTAMPTZ NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        CHECK (open_library_key IS NOT NULL OR google_books_id IS NOT NULL
                               OR isbn_13 IS NOT NULL OR isbn_10 IS NOT NULL)
                    )
                """)

                cur.execute("""
                    CREATE TABLE IF NOT EXISTS recommendations_cache (
                        user_id VARCHAR(255) PRIMARY KEY,
                        recommendations JSONB NOT NULL,
                        generated_at TIMESTAMPTZ NOT NULL,
                        expires_at TIMESTAMPTZ NOT NULL,
                        activity_counter INTEGER NOT NULL DEFAULT 0,
                        last_auto_refresh_at TIMESTAMPTZ
                    )
                """)

                # Indexes for performance
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_books_title
                    ON books (lower(title))
                """)

                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_books_last_updated
                    ON books (last_updated)
                """)

                conn.commit()
                logger.info("Database schema initialized successfully")

    def close(self):
        """Close all connections in the pool."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def like_escape(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row) -> CacheRecord:
    (record_id, open_library_key, google_books_id, isbn_13, isbn_10, title, authors,
     publisher, published_year, description, page_count, cover_url, categories,
     language, popularity_score, ratings_average, ratings_count,
     ai_enhanced, ai_enhanced_at, last_updated) = row

    book = NormalizedBook(
        title=title,
        authors=list(authors or []),
        primary_catalog_key=open_library_key,
        secondary_catalog_key=google_books_id,
        isbn13=isbn_13,
        isbn10=isbn_10,
        publisher=publisher,
        published_year=published_year,
        description=description,
        page_count=page_count,
        cover_url=ensure_default_false(cover_url),
        categories=list(categories or []),
        language=language,
        popularity_score=popularity_score,
        ratings_average=ratings_average,
        ratings_count=ratings_count,
        source=SOURCE_CACHE,
    )
    return CacheRecord(
        id=str(record_id),
        book=book,
        last_updated=last_updated,
        ai_enhanced=bool(ai_enhanced),
        ai_enhanced_at=ai_enhanced_at,
    )


def _book_values(book: NormalizedBook) -> tuple:
    return (
        book.primary_catalog_key, book.secondary_catalog_key, book.isbn13, book.isbn10,
        book.title, book.authors, book.publisher, book.published_year,
        book.description, book.page_count, book.cover_url, book.categories,
        book.language, book.popularity_score, book.ratings_average, book.ratings_count,
    )


class PostgresBookRepository:
    """BookRepository backed by the books table."""

    def __init__(self, db: Database):
        self.db = db

    def _fetch_one(self, where: str, params: tuple) -> Optional[CacheRecord]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE {where} LIMIT 1", params)
                row = cur.fetchone()
                return _row_to_record(row) if row else None

    def _fetch_all(self, sql: str, params: tuple) -> List[CacheRecord]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [_row_to_record(row) for row in cur.fetchall()]

    def find_by_id(self, record_id: str) -> Optional[CacheRecord]:
        return self._fetch_one("id = %s", (record_id,))

    def find_by_key(self, field: str, value: str) -> Optional[CacheRecord]:
        column = KEY_COLUMNS[field]
        return self._fetch_one(f"{column} = %s", (value,))

    def insert(
        self,
        book: NormalizedBook,
        last_updated: datetime,
        ai_enhanced: bool = False,
        ai_enhanced_at: Optional[datetime] = None
    ) -> Union[CacheRecord, IdentityConflict]:
        """
        Insert a new book.

        Returns:
            The stored record, or IdentityConflict when a concurrent writer
            already holds one of the book's natural keys
        """
        record_id = str(uuid.uuid4())

        with self.db.connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        INSERT INTO books (
                            id, open_library_key, google_books_id, isbn_13, isbn_10,
                            title, authors, publisher, published_year, description,
                            page_count, cover_url, categories, language,
                            popularity_score, ratings_average, ratings_count,
                            ai_enhanced, ai_enhanced_at, last_updated
                        ) VALUES ({INSERT_PLACEHOLDERS})
                        RETURNING {BOOK_COLUMNS}
                    """, (record_id,) + _book_values(book) + (ai_enhanced, ai_enhanced_at, last_updated))
                    row = cur.fetchone()
                conn.commit()
            except errors.UniqueViolation as e:
                conn.rollback()
                return _conflict_from(e, book)

        return _row_to_record(row)

    def update(self, record: CacheRecord) -> CacheRecord:
        """
        Write a record back by id.

        Raises:
            PersistenceError: a filled-in natural key belongs to another record
        """
        with self.db.connection() as conn:
            try:
                return self._update(conn, record)
            except errors.UniqueViolation as e:
                conn.rollback()
                conflict = _conflict_from(e, record.book)
                raise PersistenceError(
                    f"update of {record.id} collides with another record",
                    key=f"{conflict.field}:{conflict.value}"
                ) from e

    def _update(self, conn, record: CacheRecord) -> CacheRecord:
        with conn.cursor() as cur:
            cur.execute(f"""
                UPDATE books SET
                    open_library_key = %s, google_books_id = %s, isbn_13 = %s, isbn_10 = %s,
                    title = %s, authors = %s, publisher = %s, published_year = %s,
                    description = %s, page_count = %s, cover_url = %s, categories = %s,
                    language = %s, popularity_score = %s, ratings_average = %s,
                    ratings_count = %s, ai_enhanced = %s, ai_enhanced_at = %s,
                    last_updated = %s
                WHERE id = %s
                RETURNING {BOOK_COLUMNS}
            """, _book_values(record.book) + (
                record.ai_enhanced, record.ai_enhanced_at, record.last_updated, record.id
            ))
            row = cur.fetchone()
        conn.commit()

        return _row_to_record(row) if row else record

    def search(self, query: str, limit: int = 20) -> List[CacheRecord]:
        """Books whose title or one of whose authors contains the query."""
        pattern = f"%{like_escape(query)}%"
        return self._fetch_all(f"""
            SELECT {BOOK_COLUMNS} FROM books
            WHERE title ILIKE %s ESCAPE '\\'
               OR EXISTS (SELECT 1 FROM unnest(authors) AS author WHERE author ILIKE %s ESCAPE '\\')
            ORDER BY popularity_score DESC NULLS LAST, created_at DESC
            LIMIT %s
        """, (pattern, pattern, limit))

    def oldest(self, limit: Optional[int] = None, missing_only: bool = False) -> List[CacheRecord]:
        """Books ordered by last refresh, oldest first."""
        where = ""
        if missing_only:
            where = "WHERE page_count IS NULL OR description IS NULL OR open_library_key IS NULL"
        return self._fetch_all(f"""
            SELECT {BOOK_COLUMNS} FROM books {where}
            ORDER BY last_updated ASC
            LIMIT %s
        """, (limit,))

    def count(self, updated_before: Optional[datetime] = None) -> int:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                if updated_before is None:
                    cur.execute("SELECT COUNT(*) FROM books")
                else:
                    cur.execute("SELECT COUNT(*) FROM books WHERE last_updated < %s", (updated_before,))
                return cur.fetchone()[0]


def _conflict_from(error: "errors.UniqueViolation", book: NormalizedBook) -> IdentityConflict:
    constraint = getattr(error.diag, "constraint_name", "") or ""
    for field, column in KEY_COLUMNS.items():
        if column in constraint and getattr(book, field):
            return IdentityConflict(field=field, value=getattr(book, field))

    # Unknown constraint name: report the strongest key the book has
    for field in KEY_COLUMNS:
        if getattr(book, field):
            return IdentityConflict(field=field, value=getattr(book, field))
    return IdentityConflict(field="id", value="")


class PostgresRecommendationCacheRepository:
    """RecommendationCacheRepository backed by the recommendations_cache table."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: str) -> Optional[RecommendationCacheEntry]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT user_id, recommendations, generated_at, expires_at,
                           activity_counter, last_auto_refresh_at
                    FROM recommendations_cache WHERE user_id = %s
                """, (user_id,))
                row = cur.fetchone()

        if not row:
            return None

        # JSONB is automatically deserialized
        return RecommendationCacheEntry(
            user_id=row[0],
            recommendations=[Recommendation(**item) for item in row[1]],
            generated_at=row[2],
            expires_at=row[3],
            activity_counter=row[4],
            last_auto_refresh_at=row[5],
        )

    def save(self, entry: RecommendationCacheEntry) -> RecommendationCacheEntry:
        payload = json.dumps([asdict(rec) for rec in entry.recommendations])

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO recommendations_cache (
                        user_id, recommendations, generated_at, expires_at,
                        activity_counter, last_auto_refresh_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET
                        recommendations = EXCLUDED.recommendations,
                        generated_at = EXCLUDED.generated_at,
                        expires_at = EXCLUDED.expires_at,
                        activity_counter = EXCLUDED.activity_counter,
                        last_auto_refresh_at = EXCLUDED.last_auto_refresh_at
                """, (
                    entry.user_id, payload, entry.generated_at, entry.expires_at,
                    entry.activity_counter, entry.last_auto_refresh_at
                ))
            conn.commit()
            logger.info(f"Cached {len(entry.recommendations)} recommendations for {entry.user_id}")

        return entry

    def increment_activity(self, user_id: str) -> Optional[int]:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE recommendations_cache
                    SET activity_counter = activity_counter + 1
                    WHERE user_id = %s
                    RETURNING activity_counter
                """, (user_id,))
                row = cur.fetchone()
            conn.commit()

        return row[0] if row else None

    def count(self) -> int:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM recommendations_cache")
                return cur.fetchone()[0]
