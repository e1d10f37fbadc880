"""
Open Library cover URLs.

Covers can be addressed by numeric cover id, by edition OLID, or by ISBN.
``?default=false`` makes the cover service answer 404 for a missing cover
instead of a transparent 1x1 pixel.
"""
from typing import Optional

COVERS_API_URL = "https://covers.openlibrary.org"


def cover_url_by_id(cover_id: Optional[int], size: str = "M") -> Optional[str]:
    if not cover_id or cover_id <= 0:
        return None
    return f"{COVERS_API_URL}/b/id/{cover_id}-{size}.jpg?default=false"


def cover_url_by_olid(olid: Optional[str], size: str = "M") -> Optional[str]:
    # Only edition ids (OL...M) have covers, work keys do not
    if not olid:
        return None
    return f"{COVERS_API_URL}/b/olid/{olid}-{size}.jpg?default=false"


def cover_url_by_isbn(isbn: Optional[str], size: str = "M") -> Optional[str]:
    if not isbn:
        return None
    return f"{COVERS_API_URL}/b/isbn/{isbn}-{size}.jpg?default=false"


def build_cover_url(
    cover_id: Optional[int] = None,
    cover_edition_key: Optional[str] = None,
    isbn13: Optional[str] = None,
    isbn10: Optional[str] = None,
    size: str = "M"
) -> Optional[str]:
    """
    Resolve a cover URL with the fixed fallback chain.

    Order: cover id, edition key, ISBN-13, ISBN-10. The first available
    method wins; later ones are never consulted.
    """
    if cover_id and cover_id > 0:
        return cover_url_by_id(cover_id, size)
    if cover_edition_key:
        return cover_url_by_olid(cover_edition_key, size)
    if isbn13:
        return cover_url_by_isbn(isbn13, size)
    if isbn10:
        return cover_url_by_isbn(isbn10, size)
    return None


def ensure_default_false(url: Optional[str]) -> Optional[str]:
    """Append ``default=false`` to Open Library cover URLs that lack it."""
    if not url or "covers.openlibrary.org" not in url:
        return url
    if "default=false" in url:
        return url
    return f"{url}&default=false" if "?" in url else f"{url}?default=false"
