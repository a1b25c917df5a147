"""
Error taxonomy for the shared Podio client.

Every failure that leaves the API client is one of these. Raw ``requests``
exceptions are always translated before they reach callers.
"""
from typing import Any, Optional


class PodioError(Exception):
    """Base class for all Podio client errors"""
    pass


class NotConfiguredError(PodioError):
    """Raised when credentials or app ids are missing"""
    pass


class NotAuthenticatedError(PodioError):
    """Raised when no valid token could be obtained, or a call is still rejected after re-auth"""
    pass


class InvalidCredentialsError(NotAuthenticatedError):
    """Customer login failed. The message never says which credential was wrong."""

    def __init__(self, message: str = "Invalid username or password"):
        super().__init__(message)


class RateLimitedError(PodioError):
    """Raised while a local or server-declared backoff window is active"""

    def __init__(self, message: str, retry_after: int = 0, endpoint: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.endpoint = endpoint


class ApiError(PodioError):
    """Any non-2xx response that is not an auth or rate-limit failure"""

    def __init__(self, status_code: int, body: Any = None, message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"API error ({status_code}): {body}")


class MalformedResponseError(PodioError):
    """A 2xx response whose body is not valid JSON"""
    pass


class NetworkError(PodioError):
    """Transport-level failure (connection refused, timeout, DNS...)"""
    pass


class RequestInProgressError(PodioError):
    """The same (method, endpoint) call is already in flight"""
    pass
