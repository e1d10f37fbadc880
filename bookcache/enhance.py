"""Validation of AI-generated metadata before it replaces catalog data."""
import logging
import re
from typing import Any, Callable, Dict, Optional

from bookcache.models import NormalizedBook

logger = logging.getLogger(__name__)

# Opaque and fallible: book in, metadata dict (or None) out
MetadataEnhancer = Callable[[NormalizedBook], Optional[Dict[str, Any]]]

MIN_CATEGORIES = 2
MAX_CATEGORIES = 3
MIN_DESCRIPTION_WORDS = 100
MAX_DESCRIPTION_WORDS = 250

_YEAR = re.compile(r"^\d{4}$")


def validate_enhanced_metadata(metadata: Dict[str, Any]) -> bool:
    """Accept only well-formed output: 2-3 categories, 100-250 words, 4-digit year."""
    categories = metadata.get("categories")
    if not isinstance(categories, list) or not MIN_CATEGORIES <= len(categories) <= MAX_CATEGORIES:
        logger.error(f"Invalid categories in enhanced metadata: {categories!r}")
        return False

    description = metadata.get("description")
    word_count = len(description.split()) if isinstance(description, str) else 0
    if not MIN_DESCRIPTION_WORDS <= word_count <= MAX_DESCRIPTION_WORDS:
        logger.error(f"Enhanced description word count out of range: {word_count}")
        return False

    if not _YEAR.match(str(metadata.get("published_year", ""))):
        logger.error(f"Invalid year in enhanced metadata: {metadata.get('published_year')!r}")
        return False

    return True


def enhance_book(book: NormalizedBook, enhancer: MetadataEnhancer) -> Optional[Dict[str, Any]]:
    """
    Run the enhancer and return the curated fields, or None.

    Returns:
        Dict of NormalizedBook field values to apply
    """
    try:
        logger.info(f"Enhancing new book with AI: {book.title}")
        metadata = enhancer(book)
    except Exception as e:
        logger.error(f"Error enhancing book with AI: {e}")
        return None

    if not metadata or not validate_enhanced_metadata(metadata):
        return None

    return {
        "categories": [str(c) for c in metadata["categories"]],
        "description": metadata["description"].strip(),
        "published_year": str(metadata["published_year"]),
        "publisher": metadata.get("publisher") or book.publisher,
    }
