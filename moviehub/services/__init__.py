"""
Resilient access to the catalog provider.

Provides:
- build_signature: Canonical request key for caching and deduplication
- ResponseCache: TTL cache over a persistent store, with stale lookups
- CircuitBreaker: Stops calls while the provider is failing
- RetryPolicy: Bounded retries with exponential backoff
- RequestDeduplicator: Collapses concurrent identical requests
- UpstreamClient: Provider client combining the patterns above
- CatalogService: Compute-or-fetch reads reporting HIT/MISS/STALE
- RecommendationAggregator: Personalized lists built on CatalogService
"""

from moviehub.services.errors import (
    ServiceError,
    CacheError,
    ClientError,
    NotFoundUpstream,
    UpstreamTransientError,
    RequestTimeoutError,
    RateLimitError,
    CircuitOpenError,
    UpstreamError,
)
from moviehub.services.signature import build_signature
from moviehub.services.cache import (
    CacheEntry,
    CacheStatus,
    CacheStore,
    MemoryCacheStore,
    ResponseCache,
    ttl_for_path,
)
from moviehub.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from moviehub.services.retry import RetryPolicy
from moviehub.services.deduplicator import RequestDeduplicator
from moviehub.services.client import UpstreamClient
from moviehub.services.catalog import CatalogResult, CatalogService
from moviehub.services.recommendations import (
    MediaRef,
    RecommendationAggregator,
    RecommendationResult,
    UserProfile,
    UserProfileProvider,
)

__all__ = [
    # Errors
    "ServiceError",
    "CacheError",
    "ClientError",
    "NotFoundUpstream",
    "UpstreamTransientError",
    "RequestTimeoutError",
    "RateLimitError",
    "CircuitOpenError",
    "UpstreamError",
    # Signature
    "build_signature",
    # Cache
    "CacheEntry",
    "CacheStatus",
    "CacheStore",
    "MemoryCacheStore",
    "ResponseCache",
    "ttl_for_path",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    # Retry
    "RetryPolicy",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "UpstreamClient",
    "CatalogResult",
    "CatalogService",
    # Recommendations
    "MediaRef",
    "RecommendationAggregator",
    "RecommendationResult",
    "UserProfile",
    "UserProfileProvider",
]
