"""
Cache policy for per-reader recommendation lists.

A list is served from the cache until it expires. It is regenerated early
once the reader has acted on enough of its recommendations, but at most
once per refresh interval, so heavy activity cannot trigger a regeneration
on every visit.
"""
import enum
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Protocol, Set, Union

from bookcache.config import Config
from bookcache.database import RecommendationCacheRepository
from bookcache.errors import BookCacheError, InsufficientSignal
from bookcache.models import (
    NormalizedBook,
    RatedBook,
    Recommendation,
    RecommendationCacheEntry,
    RecommendationDraft,
)
from bookcache.search import SearchOrchestrator
from bookcache.store import utcnow

logger = logging.getLogger(__name__)

TTL_DAYS = 5
ACTIVITY_THRESHOLD = 3
MIN_REFRESH_INTERVAL_DAYS = 7
MIN_HIGH_RATINGS = 3
HIGH_RATING = 4.0
MAX_RECOMMENDATIONS = 5
MAX_RATED_BOOKS = 20
RESOLVE_SEARCH_LIMIT = 3

UNAVAILABLE_MESSAGE = "Unable to generate recommendations at this time. Please try again later."

# Opaque and fallible: user id and top-rated books in, drafts out (sync or async)
RecommendationGenerator = Callable[
    [str, List[RatedBook]],
    Union[List[RecommendationDraft], Awaitable[List[RecommendationDraft]]]
]


class CacheState(enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"


class RecommendationStatus(enum.Enum):
    CACHED = "cached"
    GENERATED = "generated"
    INSUFFICIENT_SIGNAL = "insufficient_signal"
    UNAVAILABLE = "unavailable"


@dataclass
class RecommendationResult:
    """What a reader gets back when asking for recommendations."""
    status: RecommendationStatus
    recommendations: List[Recommendation] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def from_cache(self) -> bool:
        return self.status is RecommendationStatus.CACHED


class RatingSource(Protocol):
    """Reader history the recommendations are built from."""

    def high_ratings(self, user_id: str, min_rating: float, limit: int) -> List[RatedBook]: ...

    def known_book_keys(self, user_id: str) -> Set[str]: ...


class RecommendationCacheManager:
    """Serves, invalidates and regenerates recommendation lists."""

    def __init__(
        self,
        repository: RecommendationCacheRepository,
        ratings: RatingSource,
        generator: RecommendationGenerator,
        orchestrator: SearchOrchestrator,
        ttl_days: int = TTL_DAYS,
        threshold: int = ACTIVITY_THRESHOLD,
        min_refresh_days: int = MIN_REFRESH_INTERVAL_DAYS,
        min_high_ratings: int = MIN_HIGH_RATINGS,
        high_rating: float = HIGH_RATING,
        max_recommendations: int = MAX_RECOMMENDATIONS,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            repository: One cache entry per reader
            ratings: Reader rating history and already-known books
            generator: Text model producing recommendation drafts
            orchestrator: Resolves drafts to real catalog books
            ttl_days: Lifetime of a generated list
            threshold: Activity count that makes a list eligible for early refresh
            min_refresh_days: Minimum days between activity-triggered refreshes
            min_high_ratings: High ratings required before generating
            high_rating: Rating that counts as high
            max_recommendations: Size cap of a list
            clock: Source of "now"
        """
        self.repository = repository
        self.ratings = ratings
        self.generator = generator
        self.orchestrator = orchestrator
        self.ttl = timedelta(days=ttl_days)
        self.threshold = threshold
        self.min_refresh_interval = timedelta(days=min_refresh_days)
        self.min_high_ratings = min_high_ratings
        self.high_rating = high_rating
        self.max_recommendations = max_recommendations
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        repository: RecommendationCacheRepository,
        ratings: RatingSource,
        generator: RecommendationGenerator,
        orchestrator: SearchOrchestrator,
        clock: Callable[[], datetime] = utcnow
    ) -> "RecommendationCacheManager":
        """Manager with the cache policy taken from configuration."""
        return cls(
            repository, ratings, generator, orchestrator,
            ttl_days=config.RECOMMENDATION_CACHE_DAYS,
            threshold=config.AUTO_REFRESH_THRESHOLD,
            min_refresh_days=config.MIN_AUTO_REFRESH_DAYS,
            clock=clock
        )

    def evaluate(self, entry: RecommendationCacheEntry, now: Optional[datetime] = None) -> CacheState:
        """
        Decide whether a cached list can still be served.

        A list is valid until it expires, unless the activity threshold has
        been reached and the last activity-triggered refresh is at least the
        minimum interval ago (a list never auto-refreshed qualifies at once).
        """
        now = now or self.clock()

        if now > entry.expires_at:
            return CacheState.EXPIRED

        if entry.activity_counter >= self.threshold:
            last = entry.last_auto_refresh_at
            if last is None or now - last >= self.min_refresh_interval:
                return CacheState.EXPIRED

        return CacheState.VALID

    async def get_recommendations(self, user_id: str, force_refresh: bool = False) -> RecommendationResult:
        """
        Cached list when valid, otherwise a freshly generated one.

        Returns:
            RecommendationResult; insufficient history and generation failures
            are reported through its status and message
        """
        entry = self.repository.get(user_id)
        now = self.clock()

        if entry is not None and not force_refresh and self.evaluate(entry, now) is CacheState.VALID:
            logger.debug(f"Serving cached recommendations for {user_id}")
            return RecommendationResult(RecommendationStatus.CACHED, list(entry.recommendations))

        try:
            recommendations = await self.regenerate(user_id, entry)
        except InsufficientSignal as e:
            return RecommendationResult(RecommendationStatus.INSUFFICIENT_SIGNAL, message=str(e))

        if not recommendations:
            return RecommendationResult(RecommendationStatus.UNAVAILABLE, message=UNAVAILABLE_MESSAGE)

        return RecommendationResult(RecommendationStatus.GENERATED, recommendations)

    async def regenerate(
        self,
        user_id: str,
        previous: Optional[RecommendationCacheEntry] = None
    ) -> List[Recommendation]:
        """
        Generate, resolve and cache a new list.

        Nothing is cached when no draft resolves to a catalog book.

        Raises:
            InsufficientSignal: the reader has too few high ratings
        """
        rated = self.ratings.high_ratings(user_id, self.high_rating, MAX_RATED_BOOKS)
        if len(rated) < self.min_high_ratings:
            raise InsufficientSignal(len(rated), self.min_high_ratings)

        try:
            drafts = self.generator(user_id, rated)
            if inspect.isawaitable(drafts):
                drafts = await drafts
        except Exception as e:
            logger.error(f"Recommendation generator failed for {user_id}: {e}")
            return []

        known = set(self.ratings.known_book_keys(user_id))
        known.update(r.book_key for r in rated if r.book_key)

        recommendations = []
        for draft in drafts or []:
            recommendation = await self._resolve(draft, known)
            if recommendation is None:
                continue
            known.add(recommendation.book_key)
            recommendations.append(recommendation)
            if len(recommendations) >= self.max_recommendations:
                break

        if recommendations:
            self._save(user_id, recommendations, previous)
        else:
            logger.warning(f"No recommendation drafts resolved for {user_id}")
        return recommendations

    def track_activity(self, user_id: str, book_key: str) -> bool:
        """
        Count a reader acting on one of their recommendations.

        Returns:
            True if the book was recommended and the counter was incremented
        """
        entry = self.repository.get(user_id)
        if entry is None:
            return False
        if not any(r.book_key == book_key for r in entry.recommendations):
            return False

        counter = self.repository.increment_activity(user_id)
        logger.info(f"Recommendation activity for {user_id}: {counter}")
        return counter is not None

    async def _resolve(self, draft: RecommendationDraft, known: Set[str]) -> Optional[Recommendation]:
        if not draft.authors:
            return None

        try:
            results = await self.orchestrator.search(
                f"{draft.title} {draft.authors[0]}", limit=RESOLVE_SEARCH_LIMIT
            )
        except BookCacheError as e:
            logger.warning(f"Could not resolve recommendation '{draft.title}': {e}")
            return None

        if not results:
            return None

        book = _best_match(results, draft.title)
        if not book.book_key or book.book_key in known:
            return None

        return Recommendation(
            book_key=book.book_key,
            title=book.title,
            authors=list(book.authors),
            reason=draft.reason,
            blurb=draft.blurb,
            cover_url=book.cover_url,
        )

    def _save(
        self,
        user_id: str,
        recommendations: List[Recommendation],
        previous: Optional[RecommendationCacheEntry]
    ) -> RecommendationCacheEntry:
        now = self.clock()
        generated_at = now
        last_auto_refresh_at = None

        if previous is not None:
            generated_at = max(now, previous.generated_at)
            last_auto_refresh_at = previous.last_auto_refresh_at
            if previous.activity_counter >= self.threshold:
                last_auto_refresh_at = now

        entry = RecommendationCacheEntry(
            user_id=user_id,
            recommendations=recommendations,
            generated_at=generated_at,
            expires_at=generated_at + self.ttl,
            activity_counter=0,
            last_auto_refresh_at=last_auto_refresh_at,
        )
        logger.info(f"Caching {len(recommendations)} recommendations for {user_id}")
        return self.repository.save(entry)


def _best_match(results: List[NormalizedBook], title: str) -> NormalizedBook:
    wanted = title.lower()
    for book in results:
        if book.title.lower() == wanted:
            return book
    return results[0]
