"""ISBN cleaning and checksum validation."""
import re
from typing import Iterable, Optional, Tuple

_SEPARATORS = re.compile(r"[-\s]")


def clean_isbn(isbn: Optional[str]) -> str:
    """Strip hyphens and whitespace, upper-case a trailing X."""
    if not isbn:
        return ""
    return _SEPARATORS.sub("", str(isbn)).upper()


def is_valid_isbn10(isbn: str) -> bool:
    """Check an ISBN-10 against its modulus-11 check digit."""
    cleaned = clean_isbn(isbn)
    if len(cleaned) != 10 or not cleaned[:9].isdigit():
        return False

    check = cleaned[9]
    if check != "X" and not check.isdigit():
        return False

    total = sum(int(digit) * (10 - i) for i, digit in enumerate(cleaned[:9]))
    total += 10 if check == "X" else int(check)
    return total % 11 == 0


def is_valid_isbn13(isbn: str) -> bool:
    """Check an ISBN-13 against its modulus-10 check digit (weights 1,3,1,3...)."""
    cleaned = clean_isbn(isbn)
    if len(cleaned) != 13 or not cleaned.isdigit():
        return False

    total = sum(int(digit) * (1 if i % 2 == 0 else 3) for i, digit in enumerate(cleaned[:12]))
    return int(cleaned[12]) == (10 - total % 10) % 10


def is_valid_isbn(isbn: str) -> bool:
    return is_valid_isbn10(isbn) or is_valid_isbn13(isbn)


def pick_isbns(candidates: Iterable[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Choose the first valid ISBN-13 and the first valid ISBN-10.

    Args:
        candidates: Raw ISBN strings in catalog order

    Returns:
        (isbn13, isbn10), either may be None
    """
    isbn13 = None
    isbn10 = None

    for raw in candidates:
        cleaned = clean_isbn(raw)
        if isbn13 is None and len(cleaned) == 13 and is_valid_isbn13(cleaned):
            isbn13 = cleaned
        elif isbn10 is None and len(cleaned) == 10 and is_valid_isbn10(cleaned):
            isbn10 = cleaned
        if isbn13 and isbn10:
            break

    return isbn13, isbn10
