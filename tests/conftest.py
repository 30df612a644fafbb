"""Shared test fixtures and fake collaborators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import httpx
import pytest

from moviehub.services.cache import MemoryCacheStore, ResponseCache
from moviehub.services.catalog import CatalogService
from moviehub.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from moviehub.services.client import UpstreamClient
from moviehub.services.recommendations import UserProfile, UserProfileProvider
from moviehub.services.retry import RetryPolicy

BASE_URL = "https://provider.test"


class FakeClock:
    """Controllable clock for TTL and cooldown tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ProviderStub:
    """
    Canned catalog provider behind httpx.MockTransport.

    Each path maps to a queue of responses; the last one repeats. A response
    is a payload dict, an int status code, a (status, payload) tuple, an
    exception to raise, or a callable taking the query params and returning
    one of those.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.delay = 0.0

    def add(self, path: str, *responses: Any) -> None:
        self.routes[path] = list(responses)

    def calls_to(self, path: str) -> list[dict[str, str]]:
        return [params for p, params in self.calls if p == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((path, dict(request.url.params)))
        if self.delay:
            await asyncio.sleep(self.delay)

        queue = self.routes.get(path)
        if not queue:
            return httpx.Response(404, json={"status_message": "not found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]

        if callable(response) and not isinstance(response, Exception):
            response = response(dict(request.url.params))
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return httpx.Response(response, json={"status_message": f"HTTP {response}"})
        if isinstance(response, tuple):
            status, payload = response
            return httpx.Response(status, json=payload)
        return httpx.Response(200, json=response)


class StaticProfiles(UserProfileProvider):
    """In-memory user profiles."""

    def __init__(self, *profiles: UserProfile) -> None:
        self.profiles = {p.user_id: p for p in profiles}

    async def get_profile(self, user_id: str) -> UserProfile | None:
        return self.profiles.get(user_id)


def make_client(
    provider: ProviderStub,
    clock: FakeClock,
    sleep: FakeSleep | None = None,
    max_attempts: int = 3,
    failure_threshold: int = 5,
    timeout: float = 10.0,
) -> UpstreamClient:
    return UpstreamClient(
        base_url=BASE_URL,
        api_key="test-token",
        timeout=timeout,
        retry_policy=RetryPolicy(
            max_attempts=max_attempts,
            base_delay=0.5,
            jitter=False,
            sleep=sleep or FakeSleep(),
        ),
        breaker=CircuitBreaker(
            "tmdb",
            CircuitBreakerConfig(
                failure_threshold=failure_threshold,
                reset_timeout=timedelta(seconds=30),
            ),
            clock=clock,
        ),
        transport=provider.transport(),
    )


def results(*ids: int, **extra: Any) -> dict[str, Any]:
    """Provider-shaped result list."""
    return {
        "page": 1,
        "results": [{"id": i, **extra} for i in ids],
        "total_pages": 1,
        "total_results": len(ids),
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def client(provider: ProviderStub, clock: FakeClock, fake_sleep: FakeSleep) -> UpstreamClient:
    return make_client(provider, clock, fake_sleep)


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(MemoryCacheStore(), clock=clock)


@pytest.fixture
def catalog(client: UpstreamClient, cache: ResponseCache) -> CatalogService:
    return CatalogService(client, cache)
