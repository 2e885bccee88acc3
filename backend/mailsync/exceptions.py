"""Sync error taxonomy shared by the fetch client, rate limiter and strategies."""
from typing import Optional


class SyncError(Exception):
    """Base class for errors a sync run knows how to classify."""

    code = "SYNC_ERROR"
    retryable = False
    retry_after_s: Optional[float] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Retry hints copied into a failed run's result."""
        return {
            "code": self.code,
            "retryable": self.retryable,
            "retry_after_s": self.retry_after_s,
        }


class RateLimitTimeout(SyncError):
    """Local token bucket could not supply tokens before the wait timeout."""

    code = "RATE_LIMIT_TIMEOUT"
    retryable = True


class UpstreamError(SyncError):
    """Upstream API answered with a non-success status."""

    code = "UPSTREAM_ERROR"

    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status
        self.retryable = status is None or status >= 500


class UpstreamRateLimitError(UpstreamError):
    """429 from the provider. Never retried inside the fetch client."""

    code = "RATE_LIMIT"

    def __init__(self, message: str = "Rate limit exceeded", retry_after_s: Optional[float] = None):
        super().__init__(429, message)
        self.retry_after_s = retry_after_s
        self.retryable = True


class AuthenticationError(UpstreamError):
    """401/403: the stored credential is no longer valid."""

    code = "AUTH_ERROR"

    def __init__(self, status: int = 401, message: Optional[str] = None):
        super().__init__(status, message or "Authentication failed. Please reconnect your account.")
        self.retryable = False


class NetworkError(UpstreamError):
    """Transport failure after the fetch client exhausted its retries."""

    code = "NETWORK_ERROR"

    def __init__(self, message: str):
        super().__init__(None, message)
        self.retryable = True
