"""Parse and normalize Open Library and Google Books responses."""
import html
import logging
import re
from typing import Dict, Any, List, Optional, Iterable

from bookcache.covers import build_cover_url
from bookcache.errors import MalformedUpstreamResponse
from bookcache.isbn import pick_isbns
from bookcache.models import NormalizedBook, SOURCE_OPEN_LIBRARY, SOURCE_GOOGLE_BOOKS

logger = logging.getLogger(__name__)

# Work detail bundle: {"work": ..., "edition": ..., "authors": [...]}
SOURCE_OPEN_LIBRARY_WORK = "openlibrary_work"

MAX_CATEGORIES = 5
MAX_CATEGORY_LENGTH = 50

POPULARITY_WEIGHTS = (
    ("edition_count", 10),
    ("already_read_count", 5),
    ("currently_reading_count", 3),
    ("want_to_read_count", 2),
    ("ratings_count", 1),
)

_YEAR = re.compile(r"\b(\d{4})\b")
_TAGS = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


def extract_key_id(key: Optional[str]) -> Optional[str]:
    """'/works/OL45804W' -> 'OL45804W'."""
    if not key:
        return None
    return key.rstrip("/").split("/")[-1] or None


def text_value(value: Any) -> Optional[str]:
    """Unwrap Open Library text fields, which are either str or {"type", "value"}."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("value") or None
    return None


def extract_year(value: Any) -> Optional[str]:
    """Pull a 4-digit year out of 1965, "1965", "March 2008" or "2008-03-15"."""
    if value is None:
        return None
    match = _YEAR.search(str(value))
    return match.group(1) if match else None


def truncate_categories(subjects: Optional[Iterable[str]]) -> List[str]:
    """Keep the first distinct subjects shorter than the length cap."""
    categories = []
    for subject in subjects or []:
        if not isinstance(subject, str):
            continue
        subject = subject.strip()
        if not subject or len(subject) >= MAX_CATEGORY_LENGTH or subject in categories:
            continue
        categories.append(subject)
        if len(categories) == MAX_CATEGORIES:
            break
    return categories


def popularity_score(doc: Dict[str, Any]) -> Optional[int]:
    """
    Weighted sum of reader engagement counters.

    Returns None when the doc carries none of the counters, so sources
    without engagement data are distinguishable from unpopular books.
    """
    present = [name for name, _ in POPULARITY_WEIGHTS if doc.get(name) is not None]
    if not present:
        return None
    return sum(int(doc.get(name) or 0) * weight for name, weight in POPULARITY_WEIGHTS)


def strip_html(text: Optional[str]) -> Optional[str]:
    """Remove tags, decode entities and collapse whitespace."""
    if not text:
        return text
    text = html.unescape(_TAGS.sub("", text))
    return _WHITESPACE.sub(" ", text).strip() or None


def _first(values: Any) -> Any:
    if isinstance(values, list) and values:
        return values[0]
    return None


def _cover_id(values: Any) -> Optional[int]:
    # Open Library uses -1 for "no cover"
    for value in values if isinstance(values, list) else []:
        if isinstance(value, int) and value > 0:
            return value
    return None


def _is_english(edition: Dict[str, Any]) -> bool:
    return any(
        isinstance(lang, dict) and lang.get("key") == "/languages/eng"
        for lang in edition.get("languages") or []
    )


def score_edition(edition: Dict[str, Any]) -> int:
    """Completeness score used to pick the best edition of a work."""
    score = 0
    if edition.get("isbn_13"):
        score += 10
    if edition.get("isbn_10"):
        score += 5
    if edition.get("number_of_pages"):
        score += 5
    if _cover_id(edition.get("covers")):
        score += 5
    if _is_english(edition):
        score += 3
    if edition.get("publishers"):
        score += 2
    return score


def select_best_edition(editions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Highest scoring edition; ties keep the catalog's own ordering."""
    best = None
    best_score = -1
    for edition in editions:
        score = score_edition(edition)
        if score > best_score:
            best, best_score = edition, score
    return best


def parse_open_library_doc(doc: Dict[str, Any]) -> NormalizedBook:
    """Normalize one work-level doc from /search.json."""
    work_key = extract_key_id(doc.get("key"))
    title = (doc.get("title") or "").strip()
    if not work_key or not title:
        raise MalformedUpstreamResponse(SOURCE_OPEN_LIBRARY, "search doc without key or title")

    isbn13, isbn10 = pick_isbns(doc.get("isbn") or [])

    return NormalizedBook(
        title=title,
        authors=list(doc.get("author_name") or []),
        primary_catalog_key=work_key,
        isbn13=isbn13,
        isbn10=isbn10,
        publisher=_first(doc.get("publisher")),
        published_year=extract_year(doc.get("first_publish_year")),
        page_count=doc.get("number_of_pages_median"),
        cover_url=build_cover_url(
            cover_id=doc.get("cover_i"),
            cover_edition_key=doc.get("cover_edition_key"),
            isbn13=isbn13,
            isbn10=isbn10,
        ),
        categories=truncate_categories(doc.get("subject")),
        language=_first(doc.get("language")),
        popularity_score=popularity_score(doc),
        ratings_average=doc.get("ratings_average"),
        ratings_count=doc.get("ratings_count"),
        source=SOURCE_OPEN_LIBRARY,
    )


def parse_open_library_work(bundle: Dict[str, Any]) -> NormalizedBook:
    """Normalize a work detail bundle (work, best edition, author names)."""
    work = bundle.get("work") or {}
    edition = bundle.get("edition") or {}

    work_key = extract_key_id(work.get("key"))
    title = (work.get("title") or edition.get("title") or "").strip()
    if not work_key or not title:
        raise MalformedUpstreamResponse(SOURCE_OPEN_LIBRARY, "work without key or title")

    isbn13, isbn10 = pick_isbns((edition.get("isbn_13") or []) + (edition.get("isbn_10") or []))
    cover_id = _cover_id(edition.get("covers")) or _cover_id(work.get("covers"))

    language = None
    lang = _first(edition.get("languages"))
    if isinstance(lang, dict) and lang.get("key"):
        language = lang["key"].replace("/languages/", "")

    return NormalizedBook(
        title=title,
        authors=[name for name in bundle.get("authors") or [] if name],
        primary_catalog_key=work_key,
        isbn13=isbn13,
        isbn10=isbn10,
        publisher=_first(edition.get("publishers")),
        published_year=extract_year(work.get("first_publish_date") or edition.get("publish_date")),
        description=text_value(work.get("description")),
        page_count=edition.get("number_of_pages"),
        cover_url=build_cover_url(cover_id=cover_id, isbn13=isbn13, isbn10=isbn10),
        categories=truncate_categories(work.get("subjects")),
        language=language,
        source=SOURCE_OPEN_LIBRARY,
    )


def parse_google_volume(item: Dict[str, Any]) -> NormalizedBook:
    """Normalize one volume from the Google Books API."""
    volume_id = item.get("id")
    volume_info = item.get("volumeInfo") or {}
    title = (volume_info.get("title") or "").strip()
    if not volume_id or not title:
        raise MalformedUpstreamResponse(SOURCE_GOOGLE_BOOKS, "volume without id or title")

    # ISBNs are nested as [{"type": "ISBN_13", "identifier": "..."}]
    identifiers = [
        ident.get("identifier")
        for ident in volume_info.get("industryIdentifiers") or []
        if ident.get("type") in ("ISBN_13", "ISBN_10")
    ]
    isbn13, isbn10 = pick_isbns(i for i in identifiers if i)

    image_links = volume_info.get("imageLinks") or {}

    return NormalizedBook(
        title=title,
        authors=list(volume_info.get("authors") or []),
        secondary_catalog_key=volume_id,
        isbn13=isbn13,
        isbn10=isbn10,
        publisher=volume_info.get("publisher"),
        published_year=extract_year(volume_info.get("publishedDate")),
        description=strip_html(volume_info.get("description")),
        page_count=volume_info.get("pageCount"),
        cover_url=image_links.get("thumbnail") or image_links.get("smallThumbnail"),
        categories=truncate_categories(volume_info.get("categories")),
        language=volume_info.get("language"),
        ratings_average=volume_info.get("averageRating"),
        ratings_count=volume_info.get("ratingsCount"),
        source=SOURCE_GOOGLE_BOOKS,
    )


_PARSERS = {
    SOURCE_OPEN_LIBRARY: parse_open_library_doc,
    SOURCE_OPEN_LIBRARY_WORK: parse_open_library_work,
    SOURCE_GOOGLE_BOOKS: parse_google_volume,
}


def normalize(raw: Dict[str, Any], source: str) -> NormalizedBook:
    """
    Convert a raw catalog record into a NormalizedBook.

    Args:
        raw: Record as returned by a catalog adapter
        source: SOURCE_OPEN_LIBRARY, SOURCE_OPEN_LIBRARY_WORK or SOURCE_GOOGLE_BOOKS

    Returns:
        NormalizedBook

    Raises:
        MalformedUpstreamResponse: the record lacks a title or identity
    """
    parser = _PARSERS.get(source)
    if parser is None:
        raise ValueError(f"Unknown source: {source}")
    if not isinstance(raw, dict):
        raise MalformedUpstreamResponse(source, f"expected object, got {type(raw).__name__}")

    try:
        return parser(raw)
    except MalformedUpstreamResponse:
        raise
    except (AttributeError, TypeError, ValueError) as e:
        raise MalformedUpstreamResponse(source, str(e)) from e


def normalize_many(raws: Iterable[Dict[str, Any]], source: str) -> List[NormalizedBook]:
    """Normalize a batch, dropping records that fail to parse."""
    books = []

    for raw in raws:
        try:
            books.append(normalize(raw, source))
        except MalformedUpstreamResponse as e:
            # One bad record must not abort the batch
            logger.warning(f"Skipping record: {e}")

    return books
