"""Tests for the recommendation cache policy."""
import asyncio
from datetime import timedelta

from bookcache.config import Config
from bookcache.errors import AllSourcesUnavailable
from bookcache.models import (
    NormalizedBook,
    RatedBook,
    Recommendation,
    RecommendationCacheEntry,
    RecommendationDraft,
)
from bookcache.recommendations import (
    CacheState,
    RecommendationCacheManager,
    RecommendationStatus,
)

CATALOG = {
    "Hyperion": ("OL10W", "Dan Simmons"),
    "Foundation": ("OL11W", "Isaac Asimov"),
    "Solaris": ("OL12W", "Stanislaw Lem"),
    "Neuromancer": ("OL13W", "William Gibson"),
    "Ubik": ("OL14W", "Philip K. Dick"),
    "Kindred": ("OL15W", "Octavia E. Butler"),
    "Dune": ("OL16W", "Frank Herbert"),
}

RATED = [
    RatedBook(title="Dune", authors=["Frank Herbert"], rating=5.0, book_key="OL16W"),
    RatedBook(title="Hyperion", authors=["Dan Simmons"], rating=4.5),
    RatedBook(title="The Left Hand of Darkness", authors=["Ursula K. Le Guin"], rating=4.0),
]


class FakeOrchestrator:
    """Answers '<title> <author>' queries from a fixed catalog."""

    def __init__(self, fail=False):
        self.queries = []
        self.fail = fail

    async def search(self, query, limit=20, author=None):
        self.queries.append((query, limit))
        if self.fail:
            raise AllSourcesUnavailable({})
        for title, (key, name) in CATALOG.items():
            if query == f"{title} {name}":
                return [NormalizedBook(title=title, authors=[name], primary_catalog_key=key)]
        return []


def _drafts(*titles):
    return [
        RecommendationDraft(title=t, authors=[CATALOG[t][1]] if t in CATALOG else ["Nobody"],
                            reason=f"Because of {t}", blurb="A classic.")
        for t in titles
    ]


def _manager(rec_repo, ratings, generator, clock, orchestrator=None):
    return RecommendationCacheManager(
        rec_repo, ratings, generator, orchestrator or FakeOrchestrator(), clock=clock
    )


def _entry(clock, **overrides):
    now = clock()
    fields = dict(
        user_id="u1",
        recommendations=[Recommendation("OL10W", "Hyperion", ["Dan Simmons"], "r", "b")],
        generated_at=now,
        expires_at=now + timedelta(days=5),
    )
    fields.update(overrides)
    return RecommendationCacheEntry(**fields)


def test_fresh_entry_without_activity_is_valid(rec_repo, make_ratings, clock):
    """Test the plain VALID case."""
    manager = _manager(rec_repo, make_ratings(), None, clock)

    assert manager.evaluate(_entry(clock)) is CacheState.VALID


def test_activity_after_refresh_interval_expires_entry(rec_repo, make_ratings, clock):
    """Enough activity and an old auto refresh expire a list before its TTL."""
    manager = _manager(rec_repo, make_ratings(), None, clock)
    entry = _entry(clock, activity_counter=3, last_auto_refresh_at=clock() - timedelta(days=8))

    assert manager.evaluate(entry) is CacheState.EXPIRED


def test_activity_is_rate_limited(rec_repo, make_ratings, clock):
    """A recent auto refresh keeps the list valid despite activity."""
    manager = _manager(rec_repo, make_ratings(), None, clock)

    recent = _entry(clock, activity_counter=10, last_auto_refresh_at=clock() - timedelta(days=2))
    never = _entry(clock, activity_counter=3)
    below = _entry(clock, activity_counter=2)

    assert manager.evaluate(recent) is CacheState.VALID
    assert manager.evaluate(never) is CacheState.EXPIRED
    assert manager.evaluate(below) is CacheState.VALID


def test_ttl_boundary(rec_repo, make_ratings, clock):
    """Valid up to and including expires_at."""
    manager = _manager(rec_repo, make_ratings(), None, clock)
    entry = _entry(clock)

    assert manager.evaluate(entry, entry.expires_at) is CacheState.VALID
    assert manager.evaluate(entry, entry.expires_at + timedelta(seconds=1)) is CacheState.EXPIRED


def test_generates_and_caches(rec_repo, make_ratings, clock):
    """New lists skip known books and unresolvable drafts and are capped at five."""
    calls = []

    def generator(user_id, rated):
        calls.append((user_id, [r.title for r in rated]))
        return _drafts("Dune", "Hyperion", "Nowhere Book", "Foundation", "Solaris",
                       "Neuromancer", "Ubik", "Kindred") + [
            RecommendationDraft(title="Anonymous Work", authors=[])
        ]

    ratings = make_ratings(rated=RATED, known={"OL10W"})
    manager = _manager(rec_repo, ratings, generator, clock)

    result = asyncio.run(manager.get_recommendations("u1"))

    assert result.status is RecommendationStatus.GENERATED
    assert not result.from_cache
    assert [r.title for r in result.recommendations] == [
        "Foundation", "Solaris", "Neuromancer", "Ubik", "Kindred"
    ]
    assert result.recommendations[0].reason == "Because of Foundation"

    entry = rec_repo.get("u1")
    assert entry.activity_counter == 0
    assert entry.generated_at == clock()
    assert entry.expires_at == clock() + timedelta(days=5)
    assert entry.last_auto_refresh_at is None

    again = asyncio.run(manager.get_recommendations("u1"))
    assert again.status is RecommendationStatus.CACHED
    assert again.recommendations == result.recommendations
    assert len(calls) == 1


def test_insufficient_signal(rec_repo, make_ratings, clock):
    """Fewer than three high ratings yields an explanation, not an empty cache."""
    manager = _manager(rec_repo, make_ratings(rated=RATED[:2]), lambda u, r: _drafts("Ubik"), clock)

    result = asyncio.run(manager.get_recommendations("u1"))

    assert result.status is RecommendationStatus.INSUFFICIENT_SIGNAL
    assert "You currently have 2" in result.message
    assert rec_repo.count() == 0


def test_generator_failure_is_unavailable(rec_repo, make_ratings, clock):
    """Test that a failing text model degrades to an unavailable result."""
    def generator(user_id, rated):
        raise RuntimeError("quota exceeded")

    manager = _manager(rec_repo, make_ratings(rated=RATED), generator, clock)

    result = asyncio.run(manager.get_recommendations("u1"))

    assert result.status is RecommendationStatus.UNAVAILABLE
    assert result.message
    assert rec_repo.saves == 0


def test_unresolvable_drafts_keep_old_cache(rec_repo, make_ratings, clock):
    """Test that failing lookups leave the existing entry alone."""
    old = rec_repo.save(_entry(clock, expires_at=clock() - timedelta(days=1)))
    manager = _manager(rec_repo, make_ratings(rated=RATED), lambda u, r: _drafts("Ubik"), clock,
                       orchestrator=FakeOrchestrator(fail=True))

    result = asyncio.run(manager.get_recommendations("u1"))

    assert result.status is RecommendationStatus.UNAVAILABLE
    assert rec_repo.get("u1") is old


def test_async_generator(rec_repo, make_ratings, clock):
    """Test that coroutine generators are awaited."""
    async def generator(user_id, rated):
        return _drafts("Ubik")

    manager = _manager(rec_repo, make_ratings(rated=RATED), generator, clock)

    result = asyncio.run(manager.get_recommendations("u1", force_refresh=True))

    assert [r.book_key for r in result.recommendations] == ["OL14W"]


def test_activity_triggered_refresh_stamps_auto_refresh(rec_repo, make_ratings, clock):
    """Tracked activity expires the list and the regeneration is stamped."""
    manager = _manager(rec_repo, make_ratings(rated=RATED), lambda u, r: _drafts("Ubik", "Solaris"), clock)
    asyncio.run(manager.get_recommendations("u1"))

    assert manager.track_activity("u1", "OL14W")
    assert not manager.track_activity("u1", "OL99W")
    assert not manager.track_activity("nobody", "OL14W")
    assert manager.track_activity("u1", "OL12W")
    assert manager.track_activity("u1", "OL14W")
    assert rec_repo.get("u1").activity_counter == 3

    clock.advance(days=1)
    result = asyncio.run(manager.get_recommendations("u1"))

    entry = rec_repo.get("u1")
    assert result.status is RecommendationStatus.GENERATED
    assert entry.activity_counter == 0
    assert entry.last_auto_refresh_at == clock()
    assert entry.generated_at == clock()


def test_ttl_refresh_keeps_previous_stamp(rec_repo, make_ratings, clock):
    """A purely time-triggered regeneration does not move the auto refresh stamp."""
    stamp = clock() - timedelta(days=20)
    rec_repo.save(_entry(clock, expires_at=clock() - timedelta(seconds=1), activity_counter=1,
                         last_auto_refresh_at=stamp))
    manager = _manager(rec_repo, make_ratings(rated=RATED), lambda u, r: _drafts("Ubik"), clock)

    asyncio.run(manager.get_recommendations("u1"))

    entry = rec_repo.get("u1")
    assert entry.last_auto_refresh_at == stamp
    assert entry.activity_counter == 0


def test_generated_at_never_moves_backwards(rec_repo, make_ratings, clock):
    """A previous entry stamped ahead of the clock bounds the new one."""
    ahead = clock() + timedelta(hours=2)
    rec_repo.save(_entry(clock, generated_at=ahead, expires_at=ahead + timedelta(days=5)))
    manager = _manager(rec_repo, make_ratings(rated=RATED), lambda u, r: _drafts("Ubik"), clock)

    asyncio.run(manager.get_recommendations("u1", force_refresh=True))

    entry = rec_repo.get("u1")
    assert entry.generated_at == ahead
    assert entry.expires_at == ahead + timedelta(days=5)


def test_policy_from_config(rec_repo, make_ratings, clock):
    """Configured TTL, threshold and refresh interval drive the policy."""
    class ShortPolicy(Config):
        RECOMMENDATION_CACHE_DAYS = 1
        AUTO_REFRESH_THRESHOLD = 10
        MIN_AUTO_REFRESH_DAYS = 2

    manager = RecommendationCacheManager.from_config(
        ShortPolicy(), rec_repo, make_ratings(rated=RATED), lambda u, r: _drafts("Ubik"),
        FakeOrchestrator(), clock=clock
    )
    asyncio.run(manager.get_recommendations("u1"))
    entry = rec_repo.get("u1")

    assert entry.expires_at == clock() + timedelta(days=1)
    assert manager.evaluate(_entry(clock, activity_counter=9)) is CacheState.VALID
    assert manager.evaluate(_entry(clock, activity_counter=10)) is CacheState.EXPIRED
    stamped = _entry(clock, activity_counter=10, last_auto_refresh_at=clock() - timedelta(days=1))
    assert manager.evaluate(stamped) is CacheState.VALID
