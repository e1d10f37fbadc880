"""Tests for ISBN cleaning and validation."""
import random

from bookcache.isbn import clean_isbn, is_valid_isbn10, is_valid_isbn13, pick_isbns


def _check_digit(first12):
    total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(first12))
    return str((10 - total % 10) % 10)


def test_isbn13_checksum_property():
    """Random 13-digit strings validate exactly when the check digit matches."""
    rng = random.Random(1234)

    for _ in range(2000):
        digits = "".join(rng.choice("0123456789") for _ in range(13))
        expected = digits[12] == _check_digit(digits[:12])
        assert is_valid_isbn13(digits) is expected


def test_isbn13_known_values():
    """Test real ISBN-13 values with and without hyphens."""
    assert is_valid_isbn13("9780743273565")
    assert is_valid_isbn13("978-0-306-40615-7")
    assert not is_valid_isbn13("9780743273566")
    assert not is_valid_isbn13("978074327356")
    assert not is_valid_isbn13("97807432735ab")


def test_isbn10_checksum():
    """Test ISBN-10 mod 11 validation, including X check digits."""
    assert is_valid_isbn10("0743273567")
    assert is_valid_isbn10("0-441-17271-7")
    assert is_valid_isbn10("080442957X")
    assert not is_valid_isbn10("0743273568")
    assert not is_valid_isbn10("X743273567")


def test_clean_isbn():
    """Test separator stripping."""
    assert clean_isbn(" 978-0 306-40615-7 ") == "9780306406157"
    assert clean_isbn("080442957x") == "080442957X"
    assert clean_isbn(None) == ""


def test_pick_isbns_prefers_first_valid_of_each_length():
    """Invalid values are skipped, never picked."""
    isbn13, isbn10 = pick_isbns([
        "9780743273566",  # bad checksum
        "0743273567",
        "9780743273565",
        "9780306406157",
    ])

    assert isbn13 == "9780743273565"
    assert isbn10 == "0743273567"


def test_pick_isbns_empty():
    """Test no candidates."""
    assert pick_isbns([]) == (None, None)
