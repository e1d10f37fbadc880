"""
Collapse records from several sources that denote the same work.

A record is identified by every key it carries: ISBN-13, ISBN-10, the
catalog keys, and a title+authors composite. Two records sharing any key
are the same work. The higher-trust record stays the representative and
only has its missing fields filled from the other one.
"""
import logging
from dataclasses import replace
from typing import Dict, List, Optional

from bookcache.models import NormalizedBook, SOURCE_CACHE, SOURCE_OPEN_LIBRARY, SOURCE_GOOGLE_BOOKS

logger = logging.getLogger(__name__)

TRUST = {
    SOURCE_CACHE: 3,
    SOURCE_OPEN_LIBRARY: 2,
    SOURCE_GOOGLE_BOOKS: 1,
}

# Filled on the representative only when it has no value of its own
BACKFILL_FIELDS = (
    "description",
    "cover_url",
    "secondary_catalog_key",
    "page_count",
    "primary_catalog_key",
    "isbn13",
    "isbn10",
    "publisher",
    "published_year",
    "language",
    "record_id",
)


def dedup_keys(book: NormalizedBook) -> List[str]:
    """All identity keys of a record, strongest first."""
    keys = []
    if book.isbn13:
        keys.append(f"isbn13:{book.isbn13}")
    if book.isbn10:
        keys.append(f"isbn10:{book.isbn10}")
    if book.primary_catalog_key:
        keys.append(f"work:{book.primary_catalog_key}")
    if book.secondary_catalog_key:
        keys.append(f"volume:{book.secondary_catalog_key}")
    if book.title:
        # Exact match only: subtitle and punctuation variants stay distinct
        authors = ",".join(a.lower() for a in book.authors)
        keys.append(f"title:{book.title.lower()}:{authors}")
    return keys


def trust(book: NormalizedBook) -> int:
    return TRUST.get(book.source, 0)


def _present(value) -> tuple:
    # Records carrying a value sort ahead of records missing it
    return (0, value) if value else (1, "")


def precedence(book: NormalizedBook) -> tuple:
    """Sort key deciding which member of a group represents it."""
    return (
        -trust(book),
        _present(book.record_id),
        _present(book.isbn13),
        _present(book.isbn10),
        _present(book.primary_catalog_key),
        _present(book.secondary_catalog_key),
        (book.title or "").lower(),
        [a.lower() for a in book.authors],
    )


def backfill(target: NormalizedBook, donor: NormalizedBook) -> NormalizedBook:
    """Copy of target with its empty fields taken from donor."""
    updates = {}
    for name in BACKFILL_FIELDS:
        if getattr(target, name) in (None, "") and getattr(donor, name) not in (None, ""):
            updates[name] = getattr(donor, name)
    if not target.categories and donor.categories:
        updates["categories"] = list(donor.categories)
    return replace(target, **updates) if updates else target


def combine(members: List[NormalizedBook]) -> NormalizedBook:
    """
    Collapse all records of one work into its representative.

    The most trusted record wins. Equally trusted records are ordered by
    their identity keys, so the donor filling a missing field is the same
    whatever order the records arrived in.
    """
    ordered = sorted(members, key=precedence)
    representative = ordered[0]
    for donor in ordered[1:]:
        representative = backfill(representative, donor)
    return representative


def merge(candidates: List[NormalizedBook]) -> List[NormalizedBook]:
    """
    Deduplicate a stream of normalized records.

    Args:
        candidates: Records in arrival order, higher-priority sources first

    Returns:
        One representative per distinct work, in first-seen order
    """
    groups: List[Optional[List[NormalizedBook]]] = []
    owner: Dict[str, int] = {}

    for candidate in candidates:
        keys = dedup_keys(candidate)
        hits = sorted({owner[key] for key in keys if key in owner})

        if not hits:
            index = len(groups)
            groups.append([candidate])
        else:
            index = hits[0]
            # A candidate can bridge groups that were distinct until now
            for other in hits[1:]:
                groups[index].extend(groups[other])
                groups[other] = None
                for key, slot in owner.items():
                    if slot == other:
                        owner[key] = index
            groups[index].append(candidate)

        for key in keys:
            owner[key] = index

    result = [combine(members) for members in groups if members is not None]
    if len(result) != len(candidates):
        logger.debug(f"Merged {len(candidates)} records into {len(result)}")
    return result
