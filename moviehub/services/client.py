"""
UpstreamClient - Async HTTP client for the catalog provider (TMDB).

Every call is composed as:
    RequestDeduplicator -> RetryPolicy -> CircuitBreaker -> httpx GET
"""

import asyncio
from datetime import timedelta
from typing import Any

import httpx
from loguru import logger

from moviehub.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from moviehub.services.deduplicator import RequestDeduplicator
from moviehub.services.errors import (
    CircuitOpenError,
    ClientError,
    NotFoundUpstream,
    RateLimitError,
    RequestTimeoutError,
    UpstreamError,
    UpstreamTransientError,
)
from moviehub.services.retry import RetryPolicy
from moviehub.services.signature import build_signature, normalize_params
from moviehub.settings import Settings

SERVICE_ID = "tmdb"


class UpstreamClient:
    """
    Resilient GET-only client for the catalog provider.

    Usage:
        client = UpstreamClient(base_url=..., api_key=...)
        data = await client.fetch("/movie/550")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        deduplicator: RequestDeduplicator | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        service_id: str = SERVICE_ID,
    ):
        self.service_id = service_id
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._breaker = breaker or CircuitBreaker(service_id)
        self._deduplicator = deduplicator or RequestDeduplicator()
        self._transport = transport

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "UpstreamClient":
        """Build a client from application settings."""
        breaker = CircuitBreaker(
            SERVICE_ID,
            CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                reset_timeout=timedelta(seconds=settings.circuit_reset_timeout),
            ),
        )
        retry_policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )
        if not settings.tmdb_credential:
            logger.warning("TMDB credential is not configured, requests will fail")

        return cls(
            base_url=settings.tmdb_base_url,
            api_key=settings.tmdb_credential,
            timeout=settings.tmdb_timeout,
            retry_policy=retry_policy,
            breaker=breaker,
            deduplicator=RequestDeduplicator(debug=settings.debug),
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def deduplicator(self) -> RequestDeduplicator:
        return self._deduplicator

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._http_client

    async def fetch(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        Fetch a provider path.

        Args:
            path: Provider path, e.g. "/movie/550"
            params: Query parameters; None values are dropped

        Returns:
            Decoded JSON payload

        Raises:
            ClientError: Provider rejected the request (NotFoundUpstream on 404)
            UpstreamError: Retries exhausted or circuit open; see ``cause``
        """
        signature = build_signature(path, params)

        async def attempt() -> Any:
            return await self._execute_request(path, params)

        async def resilient_call() -> Any:
            return await self._retry.run(attempt, breaker=self._breaker)

        try:
            return await self._deduplicator.dedupe(signature, resilient_call)
        except (UpstreamTransientError, CircuitOpenError) as e:
            raise UpstreamError(e, service_id=self.service_id) from e

    async def _execute_request(
        self, path: str, params: dict[str, Any] | None
    ) -> Any:
        """Execute a single GET with a bounded timeout."""
        client = await self._get_http_client()

        try:
            response = await asyncio.wait_for(
                client.get(path, params=normalize_params(params)),
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()

        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RequestTimeoutError(self.service_id, self._timeout) from e

        except httpx.HTTPStatusError as e:
            raise self._classify_status(path, e.response) from e

        except httpx.RequestError as e:
            raise UpstreamTransientError(
                f"Network error: {e}", service_id=self.service_id
            ) from e

        except ValueError as e:
            # Body was not JSON; treat as a bad gateway response
            raise UpstreamTransientError(
                f"Invalid JSON from provider: {e}", service_id=self.service_id
            ) from e

    def _classify_status(self, path: str, response: httpx.Response) -> Exception:
        """Map an HTTP error status to the service error taxonomy."""
        status = response.status_code

        if status == 404:
            return NotFoundUpstream(path, service_id=self.service_id)

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                seconds = float(retry_after) if retry_after else None
            except ValueError:
                seconds = None
            return RateLimitError(self.service_id, seconds)

        message = _provider_message(response)
        if 400 <= status < 500:
            return ClientError(
                f"HTTP {status}: {message}",
                status_code=status,
                service_id=self.service_id,
            )

        return UpstreamTransientError(
            f"HTTP {status}: {message}",
            service_id=self.service_id,
            status_code=status,
        )

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        await self._deduplicator.cancel_all()
        logger.debug("UpstreamClient closed")

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _provider_message(response: httpx.Response) -> str:
    """Extract TMDB's status_message, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("status_message"):
        return str(body["status_message"])
    return response.text[:200]
