"""
Service layer exceptions.

ClientError          - provider rejected the request (4xx), never retried
UpstreamTransientError - timeout, network failure, 5xx or 429, retried
CircuitOpenError     - breaker tripped, no network attempt was made
UpstreamError        - what callers of the client see once retries are
                       exhausted or the circuit is open
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CacheError(ServiceError):
    """Cache backing store is unavailable."""

    pass


class ClientError(ServiceError):
    """Provider rejected the request. Not retried."""

    def __init__(
        self, message: str, status_code: int = 400, service_id: str | None = None
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class NotFoundUpstream(ClientError):
    """Provider answered 404."""

    def __init__(self, path: str, service_id: str | None = None):
        self.path = path
        super().__init__(
            f"Resource not found upstream: {path}",
            status_code=404,
            service_id=service_id,
        )


class UpstreamTransientError(ServiceError):
    """Failure that may succeed on retry (network, 5xx, timeout)."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class RequestTimeoutError(UpstreamTransientError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class RateLimitError(UpstreamTransientError):
    """Rate limit exceeded."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id, status_code=429)


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class UpstreamError(ServiceError):
    """Upstream call failed for good; ``cause`` holds the last failure."""

    def __init__(self, cause: Exception, service_id: str | None = None):
        self.cause = cause
        super().__init__(f"Upstream request failed: {cause}", service_id=service_id)
