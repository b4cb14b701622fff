"""
Exception hierarchy for the fetch cache.

Only ResourceUnavailable and InvalidResource ever leave FetchCacheClient.get();
TransportError and QuotaExhausted are absorbed into a stale fallback and
survive only as the __cause__ of a ResourceUnavailable.

    FetchCacheError
    +-- TransportError
    +-- QuotaExhausted
    +-- ResourceUnavailable
    +-- InvalidResource (also a ValueError)
"""
from typing import Optional


class FetchCacheError(Exception):
    """Base exception for all fetch cache errors."""


class TransportError(FetchCacheError):
    """Network failure, non-2xx response or malformed payload."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class QuotaExhausted(FetchCacheError):
    """The provider reported (or we predict) no remaining quota until reset_at."""

    def __init__(self, message: str, reset_at: Optional[float] = None):
        super().__init__(message)
        self.reset_at = reset_at


class ResourceUnavailable(FetchCacheError):
    """No upstream call succeeded and nothing is cached for the resource.

    Callers are expected to catch this and show placeholder data.
    """

    def __init__(self, resource: str, reason: str = ""):
        message = f"Resource unavailable: {resource}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.resource = resource
        self.reason = reason


class InvalidResource(FetchCacheError, ValueError):
    """Raised for an empty or malformed resource key."""
