"""
Relevance scoring for free-text book searches.

The title relation decides the tier. Author matches add a bonus on top of
the tier. Popularity and ratings only break ties inside a tier: their
contribution stays below the smallest gap between tiers.
"""
import math
import re
from typing import List, Optional

from bookcache.models import NormalizedBook

TITLE_EXACT = 1000
TITLE_EXACT_NO_ARTICLE = 950
TITLE_PREFIX = 900
TITLE_PREFIX_NO_ARTICLE = 850
TITLE_WORDS = 500
TITLE_WORDS_STEP = 50
TITLE_WORDS_FLOOR = 150
TITLE_SUBSTRING = 100

AUTHOR_EXACT = 500
AUTHOR_WORD_PREFIX = 400
AUTHOR_SUBSTRING = 200

POPULARITY_MAX = 40
RATING_MAX = 9
RATING_MIN_COUNT = 10

NO_TITLE_TIEBREAK_FACTOR = 0.3
NO_TITLE_AUTHOR_FACTOR = 0.1

_ARTICLE = re.compile(r"^(the|a|an)\s+")
_WORD = re.compile(r"\w+")


def strip_article(text: str) -> str:
    return _ARTICLE.sub("", text, count=1)


def title_tier(title: str, query: str) -> int:
    """Score of the title relation alone; 0 means no relation."""
    title = title.lower().strip()
    query = query.lower().strip()
    if not query or not title:
        return 0

    if title == query:
        return TITLE_EXACT

    bare_title = strip_article(title)
    bare_query = strip_article(query)
    if bare_title == bare_query:
        return TITLE_EXACT_NO_ARTICLE
    if title.startswith(query):
        return TITLE_PREFIX
    if bare_title.startswith(bare_query):
        return TITLE_PREFIX_NO_ARTICLE

    query_words = _WORD.findall(query)
    title_words = _WORD.findall(title)
    width = len(query_words)
    if width:
        for position in range(len(title_words) - width + 1):
            if title_words[position:position + width] == query_words:
                return max(TITLE_WORDS_FLOOR, TITLE_WORDS - position * TITLE_WORDS_STEP)

    if query in title:
        return TITLE_SUBSTRING
    return 0


def author_bonus(authors: List[str], author: Optional[str]) -> int:
    if not author or not author.strip() or not authors:
        return 0

    wanted = author.lower().strip()
    names = [name.lower() for name in authors]

    if wanted in names:
        return AUTHOR_EXACT
    if any(part.startswith(wanted) for name in names for part in name.split()):
        return AUTHOR_WORD_PREFIX
    if any(wanted in name for name in names):
        return AUTHOR_SUBSTRING
    return 0


def tiebreak(book: NormalizedBook) -> float:
    """Bounded popularity and rating signal, always below one tier step."""
    value = 0.0
    if book.popularity_score:
        # log10(1e6) = 6 reaches the cap
        value += min(POPULARITY_MAX, math.log10(book.popularity_score + 1) * POPULARITY_MAX / 6)
    if book.ratings_count and book.ratings_count > RATING_MIN_COUNT and book.ratings_average:
        value += min(RATING_MAX, book.ratings_average * RATING_MAX / 5)
    return value


def score(candidate: NormalizedBook, query: str, author: Optional[str] = None) -> float:
    """
    Relevance of a candidate for a query.

    Args:
        candidate: Normalized book
        query: Free-text query, usually a title
        author: Optional author the user asked for

    Returns:
        Higher is better
    """
    tier = title_tier(candidate.title, query)
    bonus = author_bonus(candidate.authors, author)

    if tier == 0:
        # Stays below the lowest title-matching score
        return tiebreak(candidate) * NO_TITLE_TIEBREAK_FACTOR + bonus * NO_TITLE_AUTHOR_FACTOR

    return tier + bonus + tiebreak(candidate)


def rank(
    candidates: List[NormalizedBook],
    query: str,
    author: Optional[str] = None
) -> List[NormalizedBook]:
    """Sort by score, then ratings count, then average rating (stable)."""
    return sorted(
        candidates,
        key=lambda book: (
            score(book, query, author),
            book.ratings_count or 0,
            book.ratings_average or 0,
        ),
        reverse=True
    )
