"""Tests for the database layer that do not need a running PostgreSQL."""
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from bookcache.database import (
    Database,
    PostgresBookRepository,
    _conflict_from,
    _row_to_record,
    like_escape,
)
from bookcache.models import NormalizedBook


class FakeCursor:
    def __init__(self, executed):
        self.executed = executed

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return []


class FakeConnection:
    def __init__(self):
        self.rolled_back = False
        self.executed = []

    def cursor(self):
        return FakeCursor(self.executed)

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, min_conn, max_conn, dsn):
        self.conn = FakeConnection()
        self.returned = []

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        self.returned.append(conn)

    def closeall(self):
        pass


def test_row_to_record():
    """Test mapping a books row, including the cover URL fix-up."""
    record_id = uuid.uuid4()
    updated = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = (
        record_id, "OL468431W", None, "9780743273565", None, "The Great Gatsby",
        ["F. Scott Fitzgerald"], "Scribner", "1925", None, 180,
        "https://covers.openlibrary.org/b/id/1-M.jpg", None, "eng", 100, 3.9, 12,
        True, updated, updated,
    )

    record = _row_to_record(row)

    assert record.id == str(record_id)
    assert record.ai_enhanced
    assert record.book.source == "cache"
    assert record.book.categories == []
    assert record.book.cover_url.endswith("?default=false")
    assert record.to_book().record_id == str(record_id)


def test_conflict_from_constraint_name():
    """The violated constraint names the conflicting key."""
    book = NormalizedBook(title="Gatsby", isbn13="9780743273565", isbn10="0743273567")
    error = SimpleNamespace(diag=SimpleNamespace(constraint_name="books_isbn_10_key"))

    conflict = _conflict_from(error, book)

    assert (conflict.field, conflict.value) == ("isbn10", "0743273567")


def test_conflict_from_unknown_constraint():
    """Test the fallback to the strongest key present."""
    book = NormalizedBook(title="Gatsby", isbn13="9780743273565")
    error = SimpleNamespace(diag=SimpleNamespace(constraint_name=None))

    conflict = _conflict_from(error, book)

    assert conflict.field == "isbn13"


def test_connection_rolls_back_on_error(monkeypatch):
    """A failing block rolls back and still returns the connection."""
    monkeypatch.setattr("psycopg2.pool.ThreadedConnectionPool", FakePool)
    db = Database("postgresql://test")

    with pytest.raises(RuntimeError):
        with db.connection():
            raise RuntimeError("boom")

    assert db.connection_pool.conn.rolled_back
    assert db.connection_pool.returned == [db.connection_pool.conn]


def test_search_matches_wildcards_literally(monkeypatch):
    """Percent signs and underscores in a query are not LIKE wildcards."""
    monkeypatch.setattr("psycopg2.pool.ThreadedConnectionPool", FakePool)
    db = Database("postgresql://test")

    assert PostgresBookRepository(db).search("100%_pure") == []

    sql, params = db.connection_pool.conn.executed[0]
    assert params == ("%100\\%\\_pure%", "%100\\%\\_pure%", 20)
    assert sql.count("ESCAPE '\\'") == 2
    assert like_escape("a\\b") == "a\\\\b"
