#!/usr/bin/env python3
"""Book Cache CLI - hybrid catalog search over a PostgreSQL book cache."""
import argparse
import asyncio
import sys
import json
from dataclasses import asdict
from datetime import timedelta
from tabulate import tabulate
from bookcache.config import Config
from bookcache.database import Database, PostgresBookRepository, PostgresRecommendationCacheRepository
from bookcache.errors import BookCacheError
from bookcache.google_books import GoogleBooksAdapter
from bookcache.open_library import OpenLibraryAdapter
from bookcache.refresh import BookRefresher
from bookcache.search import SearchOrchestrator
from bookcache.store import CacheStore, utcnow
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def setup_database(config: Config) -> Database:
    """Initialize database."""
    db = Database(config.DATABASE_URL)
    db.init_schema()
    return db


def build_adapters(config: Config):
    """Primary and secondary catalog adapters from configuration."""
    http = dict(
        timeout=config.DEFAULT_TIMEOUT,
        max_retries=config.DEFAULT_MAX_RETRIES,
        max_concurrent=config.MAX_CONCURRENT_REQUESTS,
    )
    primary = OpenLibraryAdapter(config.OPEN_LIBRARY_BASE_URL, **http)
    secondary = GoogleBooksAdapter(
        config.GOOGLE_BOOKS_BASE_URL,
        api_key=config.GOOGLE_BOOKS_API_KEY,
        **http
    )
    return primary, secondary


def build_store(db: Database, config: Config) -> CacheStore:
    return CacheStore(PostgresBookRepository(db), stale_days=config.BOOK_CACHE_DAYS)


async def run_search(args, config: Config, store: CacheStore):
    """Search local cache and catalogs; returns the results."""
    primary, secondary = build_adapters(config)

    async with primary, secondary:
        orchestrator = SearchOrchestrator(
            store, primary, secondary, min_results=config.MIN_SEARCH_RESULTS
        )
        logger.info(f"Searching for: {args.query}")
        return await orchestrator.search(args.query, limit=args.limit, author=args.author)


def search_books(args, config: Config):
    """Search for books and display them."""
    db = setup_database(config)

    try:
        books = asyncio.run(run_search(args, config, build_store(db, config)))
        logger.info(f"Found {len(books)} books")
        display_books(books, args.format)

    finally:
        db.close()


def add_book(args, config: Config):
    """Search, then store the selected result."""
    db = setup_database(config)

    try:
        store = build_store(db, config)
        books = asyncio.run(run_search(args, config, store))

        if not 0 <= args.index < len(books):
            logger.error(f"No result #{args.index} for '{args.query}' ({len(books)} results)")
            return

        record = store.promote(books[args.index])
        print(f"✅ Stored '{record.book.title}' as {record.id}")

    finally:
        db.close()


def resolve_isbn(args, config: Config):
    """Look up one book by ISBN."""
    db = setup_database(config)

    async def resolve():
        primary, secondary = build_adapters(config)
        async with primary, secondary:
            orchestrator = SearchOrchestrator(build_store(db, config), primary, secondary)
            return await orchestrator.resolve_isbn(args.isbn)

    try:
        book = asyncio.run(resolve())
        if book is None:
            print(f"No book found for ISBN {args.isbn}")
            return
        display_books([book], args.format)

    finally:
        db.close()


def refresh_books(args, config: Config):
    """Fill missing data on stored books from Open Library."""
    db = setup_database(config)

    async def refresh():
        primary, _ = build_adapters(config)
        async with primary:
            refresher = BookRefresher(
                build_store(db, config), primary, delay_seconds=config.REFRESH_DELAY_SECONDS
            )
            return await refresher.run(
                limit=args.limit,
                missing_only=args.missing,
                dry_run=args.dry_run,
                force=args.force
            )

    try:
        report = asyncio.run(refresh())

        rows = [
            [r.title[:50], r.status, ", ".join(r.changes) or r.error or ""]
            for r in report.results
        ]
        print("\n" + tabulate(rows, headers=["Title", "Status", "Changes"], tablefmt="grid"))

        summary = report.summary
        print("\n" + "=" * 50)
        print("REFRESH SUMMARY" + (" (DRY RUN)" if report.dry_run else ""))
        print("=" * 50)
        for status, count in summary.items():
            print(f"{status}: {count}")
        print("=" * 50 + "\n")

    finally:
        db.close()


def display_books(books, format_type: str):
    """Display books in specified format."""
    if format_type == "table":
        headers = ["Title", "Authors", "Published", "Pages", "Source", "Key"]
        rows = [
            [
                book.title[:50] + "..." if len(book.title) > 50 else book.title,
                book.authors_str[:30] + "..." if len(book.authors_str) > 30 else book.authors_str,
                book.published_year or "Unknown",
                book.page_count or "N/A",
                book.source,
                book.book_key or ""
            ]
            for book in books
        ]
        print("\n" + tabulate(rows, headers=headers, tablefmt="grid"))

    elif format_type == "json":
        print(json.dumps([asdict(book) for book in books], indent=2, default=str))

    elif format_type == "compact":
        for i, book in enumerate(books):
            print(f"{i}. {book.title} - {book.authors_str}")


def show_stats(args, config: Config):
    """Show database statistics."""
    db = setup_database(config)

    try:
        books = PostgresBookRepository(db)
        cutoff = utcnow() - timedelta(days=config.BOOK_CACHE_DAYS)

        print("\n" + "=" * 50)
        print("CACHE STATISTICS")
        print("=" * 50)
        print(f"Total books stored: {books.count()}")
        print(f"Stale books (> {config.BOOK_CACHE_DAYS} days): {books.count(updated_before=cutoff)}")
        print(f"Cached recommendation lists: {PostgresRecommendationCacheRepository(db).count()}")
        print("=" * 50 + "\n")

    finally:
        db.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Book Cache - hybrid catalog search CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Search cache, then Open Library, then Google Books
  %(prog)s search "the great gatsby" --author fitzgerald

  # Store the second result
  %(prog)s add "dune" --index 1

  # Preview a refresh of the 20 oldest books
  %(prog)s refresh --limit 20 --dry-run
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Search command
    search_parser = subparsers.add_parser("search", help="Search for books")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--author", help="Filter by author")
    search_parser.add_argument("--limit", type=int, default=20, help="Max results (default: 20)")
    search_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    # Resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Look up a book by ISBN")
    resolve_parser.add_argument("isbn", help="ISBN-10 or ISBN-13")
    resolve_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    # Add command
    add_parser = subparsers.add_parser("add", help="Store a search result in the cache")
    add_parser.add_argument("query", help="Search query")
    add_parser.add_argument("--author", help="Filter by author")
    add_parser.add_argument("--limit", type=int, default=20, help="Max results (default: 20)")
    add_parser.add_argument("--index", type=int, default=0, help="Result to store (default: 0)")

    # Refresh command
    refresh_parser = subparsers.add_parser("refresh", help="Refresh stale books from Open Library")
    refresh_parser.add_argument("--limit", type=int, help="Only process N books")
    refresh_parser.add_argument("--missing", action="store_true", help="Only books missing key data")
    refresh_parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing")
    refresh_parser.add_argument("--force", action="store_true", help="Include fresh books and replace present values")

    # Stats command
    subparsers.add_parser("stats", help="Show cache statistics")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = Config()

    try:
        if args.command == "search":
            search_books(args, config)

        elif args.command == "resolve":
            resolve_isbn(args, config)

        elif args.command == "add":
            add_book(args, config)

        elif args.command == "refresh":
            refresh_books(args, config)

        elif args.command == "stats":
            show_stats(args, config)

    except KeyboardInterrupt:
        logger.info("\n⚠️  Interrupted by user")
        sys.exit(0)
    except BookCacheError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"❌ Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
