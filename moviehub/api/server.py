"""FastAPI server exposing catalog reads and recommendations."""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from moviehub.datastore.engine import close_db, get_session_factory, init_db
from moviehub.datastore.repositories import (
    ResponseCacheRepository,
    UserProfileRepository,
)
from moviehub.exceptions import (
    UnauthorizedError,
    ValidationError,
    error_response,
)
from moviehub.services.cache import ResponseCache
from moviehub.services.cache_sweeper import CacheSweeper
from moviehub.services.catalog import (
    MEDIA_TYPES,
    SEARCH_KINDS,
    CatalogResult,
    CatalogService,
)
from moviehub.services.client import UpstreamClient
from moviehub.services.errors import (
    CacheError,
    CircuitOpenError,
    ClientError,
    RequestTimeoutError,
    ServiceError,
    UpstreamError,
)
from moviehub.services.recommendations import RecommendationAggregator
from moviehub.settings import Settings, global_settings


def error_status(error: ServiceError) -> int:
    """HTTP status for a service error."""
    if isinstance(error, ClientError):
        return error.status_code
    if isinstance(error, UpstreamError):
        if isinstance(error.cause, CircuitOpenError):
            return 503
        if isinstance(error.cause, RequestTimeoutError):
            return 504
        return 502
    if isinstance(error, CacheError):
        return 500
    return 502


def catalog_response(result: CatalogResult) -> JSONResponse:
    """Serialize a catalog read, reporting which cache path served it."""
    return JSONResponse(
        content=result.payload,
        headers={
            "X-Cache": result.cache_status.value,
            "Cache-Control": f"public, max-age={result.ttl}",
        },
    )


class CatalogServer:
    """HTTP server for catalog reads and recommendations."""

    def __init__(
        self,
        catalog: CatalogService | None = None,
        recommender: RecommendationAggregator | None = None,
        settings: Settings = global_settings,
    ):
        self.catalog = catalog
        self.recommender = recommender
        self.settings = settings
        self.sweeper: CacheSweeper | None = None
        self._owns_services = catalog is None

        self.app = FastAPI(title="MovieHub API", lifespan=self.lifespan)
        self.app.exception_handler(ServiceError)(self.handle_service_error)
        self.app.exception_handler(StarletteHTTPException)(self.handle_http_error)
        self.app.exception_handler(RequestValidationError)(self.handle_invalid_request)

        # Register routes; fixed paths before the passthrough
        self.app.get("/health")(self.health_check)
        self.app.get("/api/movies/bollywood")(self.bollywood)
        self.app.get("/api/movies/bollywood/trending")(self.bollywood_trending)
        self.app.get("/api/movies/{path:path}")(self.passthrough)
        self.app.get("/api/search")(self.search_multi)
        self.app.get("/api/search/{kind}")(self.search)
        self.app.get("/api/discover/genres/{media_type}")(self.genres)
        self.app.get("/api/discover/{media_type}")(self.discover)
        self.app.get("/api/recommendations")(self.recommendations)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        """Build services from settings unless they were injected."""
        if self._owns_services:
            await self._start_services()
        try:
            yield
        finally:
            if self._owns_services:
                await self._stop_services()

    async def _start_services(self) -> None:
        logger.info("Initializing database...")
        await init_db(self.settings.database_url)
        session_factory = get_session_factory()

        cache = ResponseCache(
            ResponseCacheRepository(session_factory), debug=self.settings.debug
        )
        client = UpstreamClient.from_settings(self.settings)
        self.catalog = CatalogService(client, cache)
        self.recommender = RecommendationAggregator(
            self.catalog, UserProfileRepository(session_factory)
        )

        self.sweeper = CacheSweeper(
            cache, interval_minutes=self.settings.cache_sweep_interval_minutes
        )
        self.sweeper.start()
        logger.info("MovieHub services started")

    async def _stop_services(self) -> None:
        if self.sweeper:
            self.sweeper.stop()
        if self.catalog:
            await self.catalog.client.close()
        await close_db()
        logger.info("MovieHub services stopped")

    async def handle_service_error(
        self, request: Request, exc: ServiceError
    ) -> JSONResponse:
        """Translate service errors into JSON error responses."""
        status_code = error_status(exc)
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(status_code, str(exc))

    async def handle_http_error(
        self, request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Route-level rejections (401, 422, unknown path) in the same envelope."""
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.detail}")
        response = error_response(exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    async def handle_invalid_request(
        self, request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Query or header values that fail type conversion."""
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        logger.warning(f"{request.method} {request.url.path} invalid: {problems}")
        return error_response(422, problems or "Invalid request")

    async def health_check(self) -> dict[str, Any]:
        """Health check endpoint."""
        if self.catalog is None:
            return {"status": "starting", "service": "moviehub"}

        client = self.catalog.client
        return {
            "status": "ok",
            "service": "moviehub",
            "cache": self.catalog.cache.get_stats().to_dict(),
            "deduplicator": client.deduplicator.get_stats().to_dict(),
            "circuit_breaker": client.breaker.get_status(),
        }

    async def passthrough(self, path: str, request: Request) -> JSONResponse:
        """Proxy any provider path, e.g. /api/movies/movie/550."""
        params = dict(request.query_params)
        result = await self.catalog.get(f"/{path.strip('/')}", params or None)
        return catalog_response(result)

    async def bollywood(self, page: int = 1) -> JSONResponse:
        """Popular Hindi-language movies."""
        result = await self.catalog.regional_popular("hi", "hi-IN", page)
        return catalog_response(result)

    async def bollywood_trending(self, page: int = 1) -> JSONResponse:
        """Trending Indian movies."""
        if page < 1:
            raise ValidationError("page must be at least 1")
        result = await self.catalog.regional_trending("hi", "hi-IN", "IN", page)
        return catalog_response(result)

    async def search_multi(self, query: str = "", page: int = 1) -> JSONResponse:
        """Search movies, TV shows and people at once."""
        return await self.search("multi", query, page)

    async def search(self, kind: str, query: str = "", page: int = 1) -> JSONResponse:
        """Search one kind of catalog record."""
        if kind not in SEARCH_KINDS:
            raise ValidationError(f"Unsupported search type: {kind}")
        result = await self.catalog.search(kind, query, page)
        return catalog_response(result)

    async def genres(self, media_type: str) -> JSONResponse:
        """Genre list for movies or TV."""
        self._check_media_type(media_type)
        return catalog_response(await self.catalog.genres(media_type))

    async def discover(self, media_type: str, request: Request) -> JSONResponse:
        """Discover with filters, e.g. ?with_genres=28&vote_average.gte=7."""
        self._check_media_type(media_type)
        result = await self.catalog.discover(media_type, dict(request.query_params))
        return catalog_response(result)

    async def recommendations(
        self, x_user_id: Optional[str] = Header(None)
    ) -> dict[str, Any]:
        """Personalized recommendations for the calling user."""
        if not x_user_id:
            raise UnauthorizedError("Missing user id")
        result = await self.recommender.recommend(x_user_id)
        return result.model_dump()

    def _check_media_type(self, media_type: str) -> None:
        if media_type not in MEDIA_TYPES:
            raise ValidationError(f"Unsupported media type: {media_type}")


def create_app(
    catalog: CatalogService | None = None,
    recommender: RecommendationAggregator | None = None,
    settings: Settings = global_settings,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        catalog: Prebuilt catalog service; built from settings when omitted
        recommender: Prebuilt recommendation aggregator
        settings: Application settings

    Returns:
        FastAPI app
    """
    server = CatalogServer(catalog, recommender, settings)
    return server.app
