import pytest
from fastapi.testclient import TestClient

from moviehub.api.server import CatalogServer
from moviehub.services.cache import DETAIL_TTL, MemoryCacheStore, ResponseCache
from moviehub.services.catalog import CatalogService
from moviehub.services.recommendations import (
    REASON_POPULAR,
    RecommendationAggregator,
    UserProfile,
)

from conftest import FakeClock, ProviderStub, StaticProfiles, make_client, results


def build_app(provider: ProviderStub, clock: FakeClock, **client_options):
    catalog = CatalogService(
        make_client(provider, clock, **client_options),
        ResponseCache(MemoryCacheStore(), clock=clock),
    )
    recommender = RecommendationAggregator(
        catalog, StaticProfiles(UserProfile(user_id="u1"))
    )
    return CatalogServer(catalog=catalog, recommender=recommender).app


@pytest.fixture
def api(provider, clock):
    with TestClient(build_app(provider, clock)) as client:
        yield client


def test_health_reports_components(api) -> None:
    response = api.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["circuit_breaker"]["state"] == "CLOSED"
    assert "hit_rate" in body["cache"]


def test_passthrough_reports_miss_then_hit(api, provider) -> None:
    provider.add("/movie/550", {"id": 550, "title": "Fight Club"})

    first = api.get("/api/movies/movie/550")
    second = api.get("/api/movies/movie/550")

    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.headers["Cache-Control"] == f"public, max-age={DETAIL_TTL}"
    assert second.json()["title"] == "Fight Club"
    assert len(provider.calls_to("/movie/550")) == 1


def test_passthrough_forwards_query(api, provider) -> None:
    provider.add("/movie/popular", results(1))

    api.get("/api/movies/movie/popular", params={"page": 2, "region": "IN"})

    assert provider.calls_to("/movie/popular") == [{"page": "2", "region": "IN"}]


def test_stale_served_when_provider_down(api, provider, clock) -> None:
    provider.add("/movie/550", {"id": 550}, 503)

    api.get("/api/movies/movie/550")
    clock.advance(DETAIL_TTL + 1)
    response = api.get("/api/movies/movie/550")

    assert response.status_code == 200
    assert response.headers["X-Cache"] == "STALE"
    assert response.json() == {"id": 550}


def test_provider_failure_without_cache_is_502(api, provider) -> None:
    provider.add("/movie/1", 500)

    response = api.get("/api/movies/movie/1")

    assert response.status_code == 502
    assert response.json()["success"] is False
    assert response.json()["error"]["status_code"] == 502


def test_open_circuit_is_503(provider, clock) -> None:
    provider.add("/movie/1", 503)
    app = build_app(provider, clock, max_attempts=1, failure_threshold=1)

    with TestClient(app) as api:
        assert api.get("/api/movies/movie/1").status_code == 502
        response = api.get("/api/movies/movie/1")

    assert response.status_code == 503
    assert len(provider.calls_to("/movie/1")) == 1


def test_provider_404_passes_through(api) -> None:
    response = api.get("/api/movies/movie/999999")

    assert response.status_code == 404
    assert response.json()["error"]["status_code"] == 404


def test_search_requires_query(api) -> None:
    response = api.get("/api/search/movie", params={"query": "  "})

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Search query is required"


def test_search_rejects_unknown_kind(api) -> None:
    assert api.get("/api/search/song", params={"query": "x"}).status_code == 422


def test_search_multi(api, provider) -> None:
    provider.add("/search/multi", results(1, 2))

    response = api.get("/api/search", params={"query": "alien"})

    assert response.status_code == 200
    assert [r["id"] for r in response.json()["results"]] == [1, 2]


def test_discover_filters_and_media_type(api, provider) -> None:
    provider.add("/discover/tv", results(7))

    ok = api.get("/api/discover/tv", params={"with_genres": "18", "api_key": "x"})
    bad = api.get("/api/discover/music")

    assert ok.status_code == 200
    assert provider.calls_to("/discover/tv") == [
        {
            "sort_by": "popularity.desc",
            "page": "1",
            "include_adult": "false",
            "with_genres": "18",
        }
    ]
    assert bad.status_code == 422


def test_genres(api, provider) -> None:
    provider.add("/genre/movie/list", {"genres": [{"id": 28, "name": "Action"}]})

    response = api.get("/api/discover/genres/movie")

    assert response.json()["genres"][0]["name"] == "Action"


def test_bollywood(api, provider) -> None:
    provider.add("/discover/movie", results(11, original_language="hi"))

    response = api.get("/api/movies/bollywood")

    assert response.status_code == 200
    assert response.headers["X-Cache"] == "MISS"
    assert response.json()["results"][0]["id"] == 11


def test_recommendations_require_user(api) -> None:
    assert api.get("/api/recommendations").status_code == 401


def test_recommendations_for_user(api, provider) -> None:
    provider.add("/trending/movie/day", results(1, 2))

    response = api.get("/api/recommendations", headers={"X-User-Id": "u1"})

    assert response.status_code == 200
    assert response.json() == {
        "recommendations": [
            {"id": 1, "media_type": "movie"},
            {"id": 2, "media_type": "movie"},
        ],
        "reason": REASON_POPULAR,
    }


def test_bollywood_trending_is_not_proxied(api, provider) -> None:
    provider.add("/discover/movie", results())
    provider.add(
        "/trending/movie/day",
        {"results": [{"id": 5, "original_language": "hi"}], "total_pages": 1},
    )

    response = api.get("/api/movies/bollywood/trending")

    assert response.status_code == 200
    assert response.headers["X-Cache"] == "MISS"
    assert [r["id"] for r in response.json()["results"]] == [5]
    assert provider.calls_to("/bollywood/trending") == []


def test_bollywood_trending_rejects_bad_page(api) -> None:
    response = api.get("/api/movies/bollywood/trending", params={"page": 0})

    assert response.status_code == 422


@pytest.mark.parametrize(
    ("path", "params", "status"),
    [
        ("/api/recommendations", {}, 401),
        ("/api/discover/music", {}, 422),
        ("/api/movies/bollywood", {"page": "abc"}, 422),
        ("/nowhere", {}, 404),
    ],
)
def test_route_errors_share_the_service_error_envelope(api, path, params, status) -> None:
    response = api.get(path, params=params)

    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"]["status_code"] == status
    assert body["error"]["message"]
    assert "detail" not in body


def test_missing_user_message(api) -> None:
    response = api.get("/api/recommendations")

    assert response.json()["error"]["message"] == "Missing user id"
