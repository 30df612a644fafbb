"""
CatalogService - Read-through access to the catalog provider.

Every read computes a signature, consults the response cache and only then
goes to the UpstreamClient. Callers get the payload together with the cache
path that served it, so the route layer can set X-Cache itself.
"""

from dataclasses import dataclass
from typing import Any

from loguru import logger

from moviehub.services.cache import CacheStatus, ResponseCache, ttl_for_path
from moviehub.services.client import UpstreamClient
from moviehub.services.errors import ClientError, NotFoundUpstream, UpstreamError
from moviehub.services.signature import build_signature

MEDIA_TYPES = ("movie", "tv")
SEARCH_KINDS = ("multi", "movie", "tv", "person")
TRENDING_WINDOWS = ("day", "week")

REGIONAL_TTL = 2 * 60 * 60
REGIONAL_TRENDING_TTL = 60 * 60
TRENDING_SCAN_PAGES = 5
PAGE_SIZE = 20

# Discover filters passed through by name; with_*, without_* and dotted
# range filters (vote_average.gte, ...) are passed through by shape
DISCOVER_KEYS = {
    "movie": {"primary_release_year", "region", "year"},
    "tv": {"first_air_date_year", "timezone", "screened_theatrically"},
}


def empty_page(page: int = 1) -> dict[str, Any]:
    """Provider-shaped empty result list."""
    return {"page": page, "results": [], "total_pages": 0, "total_results": 0}


@dataclass
class CatalogResult:
    """Payload plus the cache path that produced it."""

    payload: Any
    cache_status: CacheStatus
    ttl: int


class CatalogService:
    """
    Compute-or-fetch facade over ResponseCache and UpstreamClient.

    Usage:
        catalog = CatalogService(client, cache)
        result = await catalog.get("/movie/550")
        response.headers["X-Cache"] = result.cache_status.value
    """

    def __init__(self, client: UpstreamClient, cache: ResponseCache):
        self.client = client
        self.cache = cache

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        ttl: int | None = None,
    ) -> CatalogResult:
        """
        Return the payload for a provider path.

        Raises:
            ClientError: Provider rejected the request
            UpstreamError: Provider unreachable and nothing cached for the key
            CacheError: Backing store unavailable
        """
        ttl = ttl if ttl is not None else ttl_for_path(path)
        key = build_signature(path, params)

        cached = await self.cache.get(key)
        if cached is not None:
            return CatalogResult(cached, CacheStatus.HIT, ttl)

        try:
            payload = await self.client.fetch(path, params)
        except UpstreamError as e:
            stale = await self.cache.get_stale(key)
            if stale is None:
                raise
            logger.warning(f"Provider failed for {key}, serving stale data: {e}")
            return CatalogResult(stale, CacheStatus.STALE, ttl)

        await self.cache.set(key, payload, ttl)
        return CatalogResult(payload, CacheStatus.MISS, ttl)

    async def details(self, media_type: str, item_id: int | str) -> CatalogResult:
        """Detail record for a movie or TV show."""
        return await self.get(f"/{media_type}/{item_id}")

    async def similar(
        self, media_type: str, item_id: int | str, page: int = 1
    ) -> CatalogResult:
        """Items similar to the given one."""
        return await self.get(f"/{media_type}/{item_id}/similar", {"page": page})

    async def trending(
        self, media_type: str = "movie", window: str = "day", page: int | None = None
    ) -> CatalogResult:
        """Trending list for a media type and time window."""
        return await self.get(f"/trending/{media_type}/{window}", {"page": page})

    async def genres(self, media_type: str) -> CatalogResult:
        """Genre id/name list for a media type."""
        return await self.get(f"/genre/{media_type}/list")

    async def discover(
        self, media_type: str, filters: dict[str, Any] | None = None
    ) -> CatalogResult:
        """Discover list with whitelisted filters."""
        return await self.get(
            f"/discover/{media_type}", build_discover_params(media_type, filters)
        )

    async def search(self, kind: str, query: str, page: int = 1) -> CatalogResult:
        """
        Search the catalog.

        A provider 404 means nothing matched and yields an empty page.
        """
        if not query or not query.strip():
            raise ClientError("Search query is required", status_code=400)

        path = f"/search/{kind}"
        params = {"query": query.strip(), "page": page, "include_adult": False}
        try:
            return await self.get(path, params)
        except NotFoundUpstream:
            logger.debug(f"Search {path} returned 404, answering empty results")
            return CatalogResult(empty_page(page), CacheStatus.MISS, ttl_for_path(path))

    async def regional_popular(
        self, language: str = "hi", locale: str = "hi-IN", page: int = 1
    ) -> CatalogResult:
        """
        Popular movies in an original language.

        Discover sometimes returns an empty list for language filters; then
        the global popular list is filtered by original language instead.
        Empty answers are never cached.
        """
        key = f"regional_popular:{language}:{locale}:{page}"

        cached = await self.cache.get(key)
        if _has_results(cached):
            return CatalogResult(cached, CacheStatus.HIT, REGIONAL_TTL)

        try:
            data = await self.client.fetch(
                "/discover/movie",
                {
                    "with_original_language": language,
                    "language": locale,
                    "sort_by": "popularity.desc",
                    "page": page,
                },
            )
        except UpstreamError as e:
            stale = await self.cache.get_stale(key)
            if _has_results(stale):
                logger.warning(f"Regional listing failed, serving stale data: {e}")
                return CatalogResult(stale, CacheStatus.STALE, REGIONAL_TTL)
            raise

        if not _has_results(data):
            data = await self._popular_in_language(language, locale, page) or data

        if not _has_results(data):
            logger.info(f"No regional results for language '{language}'")
            return CatalogResult(empty_page(page), CacheStatus.MISS, REGIONAL_TTL)

        await self.cache.set(key, data, REGIONAL_TTL)
        return CatalogResult(data, CacheStatus.MISS, REGIONAL_TTL)

    async def regional_trending(
        self,
        language: str = "hi",
        locale: str = "hi-IN",
        region: str = "IN",
        page: int = 1,
    ) -> CatalogResult:
        """
        Trending movies from one region.

        Tries discover first. When it fails or comes back empty, scans up to
        TRENDING_SCAN_PAGES pages of the daily trending list and keeps the
        items matching language or production country. Empty answers are
        never cached, and a stale entry is only served when it has results.
        """
        key = f"regional_trending:{language}:{region}:{page}"

        cached = await self.cache.get(key)
        if _has_results(cached):
            return CatalogResult(cached, CacheStatus.HIT, REGIONAL_TRENDING_TTL)

        try:
            data = await self._discover_regional(language, locale, page)
            if not _has_results(data):
                data = await self._scan_trending(language, region, page)
        except UpstreamError as e:
            stale = await self.cache.get_stale(key)
            if _has_results(stale):
                logger.warning(f"Regional trending failed, serving stale data: {e}")
                return CatalogResult(stale, CacheStatus.STALE, REGIONAL_TRENDING_TTL)
            raise

        if not _has_results(data):
            logger.info(f"No regional trending results for region '{region}'")
            return CatalogResult(
                empty_page(page), CacheStatus.MISS, REGIONAL_TRENDING_TTL
            )

        await self.cache.set(key, data, REGIONAL_TRENDING_TTL)
        return CatalogResult(data, CacheStatus.MISS, REGIONAL_TRENDING_TTL)

    async def _discover_regional(
        self, language: str, locale: str, page: int
    ) -> dict[str, Any] | None:
        try:
            return await self.client.fetch(
                "/discover/movie",
                {
                    "with_original_language": language,
                    "language": locale,
                    "sort_by": "popularity.desc",
                    "vote_count.gte": 5,
                    "page": page,
                },
            )
        except (UpstreamError, ClientError) as e:
            logger.warning(f"Regional discover for '{language}' failed: {e}")
            return None

    async def _scan_trending(
        self, language: str, region: str, page: int
    ) -> dict[str, Any] | None:
        """Filter the first trending pages down to one region, then page locally."""
        matches: list[dict[str, Any]] = []
        wanted = page * PAGE_SIZE

        for trending_page in range(1, TRENDING_SCAN_PAGES + 1):
            listing = await self.client.fetch(
                "/trending/movie/day", {"page": trending_page}
            )
            rows = listing.get("results") if isinstance(listing, dict) else None
            if not rows:
                break

            matches.extend(
                row for row in rows if _from_region(row, language, region)
            )
            if len(matches) >= wanted or trending_page >= (
                listing.get("total_pages") or 1
            ):
                break

        if not matches:
            return None

        start = (page - 1) * PAGE_SIZE
        return {
            "page": page,
            "results": matches[start : start + PAGE_SIZE],
            "total_pages": -(-len(matches) // PAGE_SIZE),
            "total_results": len(matches),
        }

    async def _popular_in_language(
        self, language: str, locale: str, page: int
    ) -> dict[str, Any] | None:
        try:
            popular = await self.client.fetch(
                "/movie/popular", {"language": locale, "page": page}
            )
        except (UpstreamError, ClientError) as e:
            logger.warning(f"Popular fallback for '{language}' failed: {e}")
            return None

        matches = [
            item
            for item in popular.get("results") or []
            if item.get("original_language") == language
        ]
        if not matches:
            return None

        return {
            **popular,
            "results": matches,
            "total_results": len(matches),
            "total_pages": -(-len(matches) // PAGE_SIZE),
        }


def _has_results(payload: Any) -> bool:
    return isinstance(payload, dict) and bool(payload.get("results"))


def _from_region(item: Any, language: str, region: str) -> bool:
    """Match on original language, origin country or production country."""
    if not isinstance(item, dict):
        return False
    if item.get("original_language") == language:
        return True
    origin = item.get("origin_country")
    if isinstance(origin, list) and region in origin:
        return True
    countries = item.get("production_countries")
    return isinstance(countries, list) and any(
        isinstance(c, dict) and c.get("iso_3166_1") == region for c in countries
    )


def build_discover_params(
    media_type: str, filters: dict[str, Any] | None
) -> dict[str, Any]:
    """Keep only filters the provider's discover endpoint understands."""
    filters = dict(filters or {})
    try:
        page = int(filters.pop("page", None) or 1)
    except ValueError:
        raise ClientError("page must be an integer", status_code=400)

    params: dict[str, Any] = {
        "sort_by": filters.pop("sort_by", None) or "popularity.desc",
        "page": page,
        "include_adult": False,
    }
    allowed = DISCOVER_KEYS.get(media_type, set())

    for key, value in filters.items():
        if value is None or value == "":
            continue
        if (
            key in allowed
            or key.startswith(("with_", "without_"))
            or "." in key
        ):
            params[key] = value
    return params
