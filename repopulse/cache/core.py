"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from repopulse.exceptions import InvalidResource

# Defaults used when no Settings object is supplied
DEFAULT_TTL_SECONDS = 300.0
DEFAULT_LOW_WATERMARK = 5
DEFAULT_MIN_SPACING_SECONDS = 1.0
DEFAULT_SCHEDULE_INTERVAL_SECONDS = 600.0
DEFAULT_VISIBILITY_COOLDOWN_SECONDS = 300.0
DEFAULT_QUOTA_BACKOFF_SECONDS = 60.0
DEFAULT_QUOTA_REJECTION_STATUSES = (403, 429)


class CacheSource(Enum):
    """Where the value handed to a caller came from."""
    FRESH = "fresh"       # Cache hit within TTL
    UPSTREAM = "upstream" # Just fetched from the transport
    STALE = "stale"       # Fallback: upstream failed or quota was low


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value. Replaced as a whole on refresh, never mutated.
    """
    resource: str
    value: Any
    fetched_at: float

    def age_seconds(self, now: float) -> float:
        """Seconds since the value was fetched."""
        return max(0.0, now - self.fetched_at)

    def is_fresh(self, ttl: float, now: float) -> bool:
        """Check if the value is still within ttl."""
        return now - self.fetched_at < ttl


@dataclass(frozen=True)
class CacheResult:
    """
    What get() returns: the value plus enough metadata for the UI layer to
    tell fresh data from stale data.
    """
    resource: str
    value: Any
    fetched_at: float
    source: CacheSource

    @classmethod
    def from_entry(cls, entry: CacheEntry, source: CacheSource) -> "CacheResult":
        return cls(
            resource=entry.resource,
            value=entry.value,
            fetched_at=entry.fetched_at,
            source=source,
        )

    @property
    def stale(self) -> bool:
        """True when this value was served as a fallback."""
        return self.source is CacheSource.STALE

    @property
    def last_updated(self) -> str:
        """ISO timestamp of fetched_at."""
        stamp = datetime.fromtimestamp(self.fetched_at, tz=timezone.utc)
        return stamp.isoformat().replace("+00:00", "Z")

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def meta(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Convert to dictionary for JSON responses."""
        result: Dict[str, Any] = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.source.value,
            "stale": self.stale,
        }
        if now is not None:
            result["ageSeconds"] = round(self.age_seconds(now), 1)
        return result


@dataclass(frozen=True)
class CacheConfig:
    """
    Tunables for FetchCacheClient and its scheduler. All durations in seconds.
    """
    ttl: float = DEFAULT_TTL_SECONDS
    low_watermark: int = DEFAULT_LOW_WATERMARK
    min_spacing: float = DEFAULT_MIN_SPACING_SECONDS
    schedule_interval: float = DEFAULT_SCHEDULE_INTERVAL_SECONDS
    visibility_cooldown: float = DEFAULT_VISIBILITY_COOLDOWN_SECONDS
    quota_backoff: float = DEFAULT_QUOTA_BACKOFF_SECONDS
    quota_rejection_statuses: Tuple[int, ...] = DEFAULT_QUOTA_REJECTION_STATUSES

    def __post_init__(self) -> None:
        if self.ttl <= 0:
            raise ValueError(f"ttl must be positive, got {self.ttl}")
        if self.low_watermark < 0:
            raise ValueError(f"low_watermark must be >= 0, got {self.low_watermark}")
        if self.min_spacing < 0:
            raise ValueError(f"min_spacing must be >= 0, got {self.min_spacing}")
        if self.schedule_interval <= 0:
            raise ValueError(
                f"schedule_interval must be positive, got {self.schedule_interval}"
            )
        if self.visibility_cooldown < 0:
            raise ValueError(
                f"visibility_cooldown must be >= 0, got {self.visibility_cooldown}"
            )
        if self.quota_backoff <= 0:
            raise ValueError(f"quota_backoff must be positive, got {self.quota_backoff}")

    @classmethod
    def from_settings(cls, settings: Any) -> "CacheConfig":
        """Build from a config.settings.Settings instance."""
        return cls(
            ttl=settings.cache_ttl_seconds,
            low_watermark=settings.quota_low_watermark,
            min_spacing=settings.min_spacing_seconds,
            schedule_interval=settings.schedule_interval_seconds,
            visibility_cooldown=settings.visibility_cooldown_seconds,
            quota_backoff=settings.quota_backoff_seconds,
        )


def validate_resource(resource: Any) -> str:
    """
    Check a resource key before it touches the cache or the transport.

    Raises:
        InvalidResource: for non-strings and empty/blank strings
    """
    if not isinstance(resource, str):
        raise InvalidResource(
            f"Resource key must be a string, got {type(resource).__name__}"
        )
    if not resource.strip():
        raise InvalidResource("Resource key must not be empty")
    return resource
