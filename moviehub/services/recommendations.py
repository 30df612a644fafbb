"""
Personalized recommendations built from several read strategies.

Strategies, in priority order:
1. favorites-genre   - popular discover list in the favorites' top genres
2. favorites-similar - "similar" lists of the first favorites
3. history-genre     - best-rated discover list in the watch history's genres
4. trending          - trending movies, only when 1-3 produced too little

Each strategy returns its candidates instead of raising; a failed provider
lookup is logged and skipped. Candidates are merged in the order above into a
list of at most 20 distinct items.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable

from loguru import logger
from pydantic import BaseModel, Field

from moviehub.services.catalog import CatalogResult, CatalogService
from moviehub.services.errors import ServiceError

MAX_RECOMMENDATIONS = 20
TRENDING_THRESHOLD = 10

GENRE_SAMPLE_SIZE = 5  # Profile items whose details are inspected
TOP_GENRES = 3
GENRE_ITEMS = 10
SIMILAR_SAMPLE_SIZE = 3
SIMILAR_ITEMS = 5
MIN_VOTE_COUNT = 100

REASON_PERSONALIZED = "Based on your preferences"
REASON_POPULAR = "Popular movies"
REASON_EMPTY = "No recommendations available right now"
REASON_UNKNOWN_USER = "User not found"
REASON_ERROR = "Error generating recommendations"


class MediaRef(BaseModel):
    """Pointer to a catalog item in a user's profile."""

    item_id: int
    media_type: str = "movie"


class UserProfile(BaseModel):
    """Read-only view of the signals recommendations are built from."""

    user_id: str
    favorites: list[MediaRef] = Field(default_factory=list)
    watch_history: list[MediaRef] = Field(default_factory=list)


class UserProfileProvider(ABC):
    """Supplies user profiles; owned by the user collaborator."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> UserProfile | None:
        """Return the profile, or None for an unknown user."""
        ...


class RecommendationResult(BaseModel):
    """Recommendation response."""

    recommendations: list[dict[str, Any]] = Field(default_factory=list)
    reason: str


@dataclass
class RecommendationCandidate:
    """An item proposed by one strategy."""

    item_id: int
    media_type: str
    source: str
    item: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.item)
        data.setdefault("media_type", self.media_type)
        return data


@dataclass
class CandidateBatch:
    """Candidates from one provider list, of which at most ``limit`` are kept."""

    candidates: list[RecommendationCandidate]
    limit: int


class CandidateMerger:
    """Ordered, duplicate-free accumulation capped at ``capacity`` items."""

    def __init__(self, capacity: int = MAX_RECOMMENDATIONS):
        self.capacity = capacity
        self._seen: set[int] = set()
        self._items: list[RecommendationCandidate] = []

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[RecommendationCandidate]:
        return list(self._items)

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.capacity

    def add(self, batch: CandidateBatch) -> int:
        """Append unseen candidates from batch. Returns count added."""
        added = 0
        for candidate in batch.candidates:
            if added >= batch.limit or self.is_full:
                break
            if candidate.item_id in self._seen:
                continue
            self._seen.add(candidate.item_id)
            self._items.append(candidate)
            added += 1
        return added


class RecommendationAggregator:
    """
    Builds a personalized candidate list for a user.

    Usage:
        aggregator = RecommendationAggregator(catalog, profiles)
        result = await aggregator.recommend("user-1")
    """

    def __init__(self, catalog: CatalogService, profiles: UserProfileProvider):
        self.catalog = catalog
        self.profiles = profiles

    async def recommend(self, user_id: str) -> RecommendationResult:
        """Return up to 20 recommendations; never raises."""
        try:
            profile = await self.profiles.get_profile(user_id)
        except Exception as e:
            logger.error(f"Failed to load profile for user {user_id}: {e}")
            return RecommendationResult(reason=REASON_ERROR)

        if profile is None:
            return RecommendationResult(reason=REASON_UNKNOWN_USER)

        # Strategies are independent; merging below restores priority order
        personalized = await asyncio.gather(
            self._safely(self._favorites_genre(profile.favorites), "favorites-genre"),
            self._safely(
                self._favorites_similar(profile.favorites), "favorites-similar"
            ),
            self._safely(self._history_genre(profile.watch_history), "history-genre"),
        )

        merger = CandidateMerger()
        for batches in personalized:
            for batch in batches:
                merger.add(batch)
        personalized_count = len(merger)

        if len(merger) < TRENDING_THRESHOLD:
            for batch in await self._safely(self._trending(), "trending"):
                merger.add(batch)

        recommendations = [c.to_dict() for c in merger.items]
        if personalized_count:
            reason = REASON_PERSONALIZED
        elif recommendations:
            reason = REASON_POPULAR
        else:
            reason = REASON_EMPTY

        logger.info(
            f"Recommendations for user {user_id}: {len(recommendations)} items "
            f"({personalized_count} personalized)"
        )
        return RecommendationResult(recommendations=recommendations, reason=reason)

    async def _favorites_genre(self, favorites: list[MediaRef]) -> list[CandidateBatch]:
        return await self._genre_strategy(
            favorites,
            source="favorites-genre",
            extra_params={"sort_by": "popularity.desc"},
        )

    async def _history_genre(self, history: list[MediaRef]) -> list[CandidateBatch]:
        return await self._genre_strategy(
            history,
            source="history-genre",
            extra_params={
                "sort_by": "vote_average.desc",
                "vote_count.gte": MIN_VOTE_COUNT,
            },
        )

    async def _genre_strategy(
        self,
        refs: list[MediaRef],
        source: str,
        extra_params: dict[str, Any],
    ) -> list[CandidateBatch]:
        """Discover items in the genres most represented among refs."""
        sample = refs[:GENRE_SAMPLE_SIZE]
        if not sample:
            return []

        details = await asyncio.gather(
            *(
                self._lookup(
                    self.catalog.details(ref.media_type, ref.item_id),
                    f"details of {ref.media_type}/{ref.item_id}",
                )
                for ref in sample
            )
        )

        # Genre ids differ between movies and TV, so rank within one type
        media_type = _dominant_media_type(
            [ref for ref, d in zip(sample, details) if d is not None]
        )
        if media_type is None:
            return []

        genre_counts: Counter[int] = Counter()
        for ref, detail in zip(sample, details):
            if detail is None or ref.media_type != media_type:
                continue
            genres = (
                detail.payload.get("genres") if isinstance(detail.payload, dict) else None
            )
            if not isinstance(genres, list):
                continue
            for genre in genres:
                if isinstance(genre, dict) and isinstance(genre.get("id"), int):
                    genre_counts[genre["id"]] += 1

        if not genre_counts:
            return []

        top_genres = [genre_id for genre_id, _ in genre_counts.most_common(TOP_GENRES)]
        params = {
            "with_genres": ",".join(str(g) for g in top_genres),
            "page": 1,
            **extra_params,
        }
        listing = await self._lookup(
            self.catalog.get(f"/discover/{media_type}", params),
            f"{source} discover for genres {params['with_genres']}",
        )
        if listing is None:
            return []

        return [
            CandidateBatch(_candidates(listing.payload, media_type, source), GENRE_ITEMS)
        ]

    async def _favorites_similar(
        self, favorites: list[MediaRef]
    ) -> list[CandidateBatch]:
        """Items similar to the first favorites, a few per favorite."""
        sample = favorites[:SIMILAR_SAMPLE_SIZE]
        listings = await asyncio.gather(
            *(
                self._lookup(
                    self.catalog.similar(ref.media_type, ref.item_id),
                    f"similar to {ref.media_type}/{ref.item_id}",
                )
                for ref in sample
            )
        )

        return [
            CandidateBatch(
                _candidates(listing.payload, ref.media_type, "favorites-similar"),
                SIMILAR_ITEMS,
            )
            for ref, listing in zip(sample, listings)
            if listing is not None
        ]

    async def _trending(self) -> list[CandidateBatch]:
        listing = await self._lookup(
            self.catalog.trending("movie", "day"), "trending movies"
        )
        if listing is None:
            return []
        return [
            CandidateBatch(
                _candidates(listing.payload, "movie", "trending"), MAX_RECOMMENDATIONS
            )
        ]

    async def _safely(
        self, strategy: Awaitable[list[CandidateBatch]], name: str
    ) -> list[CandidateBatch]:
        """Run one strategy; anything it raises drops only that strategy."""
        try:
            return await strategy
        except Exception as e:
            logger.warning(f"Strategy {name} failed, skipping it: {e!r}")
            return []

    async def _lookup(
        self, request: Awaitable[CatalogResult], description: str
    ) -> CatalogResult | None:
        """Await a catalog read, turning service failures into a skip."""
        try:
            return await request
        except ServiceError as e:
            logger.warning(f"Skipping {description}: {e}")
            return None


def _dominant_media_type(refs: list[MediaRef]) -> str | None:
    if not refs:
        return None
    counts = Counter(ref.media_type for ref in refs)
    # most_common keeps first-seen order on ties
    return counts.most_common(1)[0][0]


def _candidates(
    payload: Any, media_type: str, source: str
) -> list[RecommendationCandidate]:
    """Turn a provider result list into candidates, skipping malformed rows."""
    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, list):
        return []

    candidates = []
    for item in results:
        if not isinstance(item, dict) or not isinstance(item.get("id"), int):
            continue
        item_id = item["id"]
        candidates.append(
            RecommendationCandidate(
                item_id=item_id,
                media_type=item.get("media_type") or media_type,
                source=source,
                item=item,
            )
        )
    return candidates
