"""
In-memory fetch cache with request coalescing, quota back-off, stale
fallback and scheduled background refresh.
"""
from .core import CacheConfig, CacheEntry, CacheResult, CacheSource, validate_resource
from .coalescer import InFlightRequest, RequestCoalescer
from .quota import GITHUB_QUOTA_HEADERS, HeaderQuotaParser, QuotaState, QuotaTracker
from .throttle import RequestThrottle
from .scheduler import RefreshOutcome, RefreshScheduler, SchedulerState
from .manager import FetchCacheClient

__all__ = [
    # Core types
    "CacheConfig",
    "CacheEntry",
    "CacheResult",
    "CacheSource",
    "validate_resource",
    # Coalescing
    "InFlightRequest",
    "RequestCoalescer",
    # Quota
    "GITHUB_QUOTA_HEADERS",
    "HeaderQuotaParser",
    "QuotaState",
    "QuotaTracker",
    # Spacing
    "RequestThrottle",
    # Scheduler
    "RefreshOutcome",
    "RefreshScheduler",
    "SchedulerState",
    # Client
    "FetchCacheClient",
]
