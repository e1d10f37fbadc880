"""Typed failures raised by the catalog, cache and recommendation layers."""
from typing import Dict, Optional


class BookCacheError(Exception):
    """Base class for all bookcache failures."""


class UpstreamUnavailable(BookCacheError):
    """A catalog answered with a non-2xx status, timed out, or was unreachable."""

    def __init__(self, source: str, detail: str = ""):
        self.source = source
        self.detail = detail
        super().__init__(f"{source} unavailable: {detail}" if detail else f"{source} unavailable")


class MalformedUpstreamResponse(BookCacheError):
    """A catalog payload could not be decoded or lacks a required field."""

    def __init__(self, source: str, detail: str = ""):
        self.source = source
        self.detail = detail
        super().__init__(f"malformed {source} response: {detail}")


class AllSourcesUnavailable(BookCacheError):
    """Every catalog consulted for a request failed."""

    def __init__(self, errors: Dict[str, Exception]):
        self.errors = errors
        sources = ", ".join(sorted(errors)) or "none"
        super().__init__(f"all sources unavailable ({sources})")


class InsufficientSignal(BookCacheError):
    """Not enough rating history to generate recommendations."""

    def __init__(self, have: int, need: int):
        self.have = have
        self.need = need
        super().__init__(
            f"Rate at least {need} books with 4+ stars to get personalized "
            f"recommendations. You currently have {have}."
        )


class InvalidBookRecord(BookCacheError):
    """A book has no title or no identity key and cannot be persisted."""


class PersistenceError(BookCacheError):
    """A store write failed and could not be recovered."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(f"{message} (key={key})" if key else message)
