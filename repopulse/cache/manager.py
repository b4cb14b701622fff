"""
Main fetch cache orchestration: TTL freshness, request coalescing, quota
back-off, stale fallback and background refresh.
"""
import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from repopulse.exceptions import (
    QuotaExhausted,
    ResourceUnavailable,
    TransportError,
)

from .coalescer import RequestCoalescer
from .core import CacheConfig, CacheEntry, CacheResult, CacheSource, validate_resource
from .quota import QuotaTracker
from .scheduler import RefreshScheduler
from .throttle import RequestThrottle

if TYPE_CHECKING:
    from repopulse.transport import Transport, TransportResponse

logger = logging.getLogger("cache.manager")


class FetchCacheClient:
    """
    Serves remote data from an in-memory cache with:
    - TTL freshness (per call override, client-wide default)
    - At most one concurrent upstream call per resource
    - Quota tracking from response metadata, skipping calls near the limit
    - Minimum spacing between upstream calls
    - Stale fallback when upstream fails or the quota is low
    - A background refresh scheduler (see RefreshScheduler)

    Construct one per process and share it; there is no module-level state.
    """

    def __init__(
        self,
        transport: "Transport",
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client.

        Args:
            transport: Object with an async fetch(resource) -> TransportResponse
            config: Tunables; defaults to CacheConfig()
            clock: Returns the current time in epoch seconds
            sleep: Coroutine used for the spacing delay and scheduler timer
        """
        self.config = config or CacheConfig()
        self._transport = transport
        self._clock = clock

        self._cache: Dict[str, CacheEntry] = {}
        self._coalescer = RequestCoalescer()
        self._quota = QuotaTracker(
            low_watermark=self.config.low_watermark,
            backoff_seconds=self.config.quota_backoff,
        )
        self._throttle = RequestThrottle(self.config.min_spacing, clock=clock, sleep=sleep)
        self.scheduler = RefreshScheduler(
            self,
            interval=self.config.schedule_interval,
            visibility_cooldown=self.config.visibility_cooldown,
            clock=clock,
            sleep=sleep,
        )

        # Every get() that is not coalesced ends in exactly one of
        # hits_fresh, hits_stale or misses (upstream value or unavailable)
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "coalesced": 0,
            "transport_calls": 0,
            "quota_skips": 0,
            "failures": 0,
        }

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get(
        self,
        resource: str,
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """
        Get data for a resource from cache or upstream.

        Args:
            resource: Resource key (the request URL)
            ttl: Freshness window in seconds; defaults to config.ttl
            force_refresh: Skip the freshness check. Coalescing and quota
                rules still apply.

        Returns:
            CacheResult; check .source / .stale to tell fresh from fallback

        Raises:
            InvalidResource: empty or non-string resource, before any I/O
            ResourceUnavailable: upstream failed and nothing is cached
        """
        resource = validate_resource(resource)
        ttl = self._resolve_ttl(ttl)
        now = self._clock()

        entry = self._cache.get(resource)
        if entry is not None and not force_refresh and entry.is_fresh(ttl, now):
            logger.debug(
                f"CACHE HIT (fresh): {resource} [age={entry.age_seconds(now):.1f}s]"
            )
            self._stats["hits_fresh"] += 1
            return CacheResult.from_entry(entry, CacheSource.FRESH)

        if self._coalescer.is_in_flight(resource):
            self._stats["coalesced"] += 1
        else:
            if entry is None:
                logger.info(f"CACHE MISS: {resource}")
            elif force_refresh:
                logger.info(f"FORCE REFRESH: {resource}")
            else:
                logger.info(
                    f"CACHE EXPIRED: {resource} [age={entry.age_seconds(now):.1f}s]"
                )

            if self._quota.is_blocked(now):
                self._stats["quota_skips"] += 1
                logger.info(f"Quota low, not calling upstream for {resource}")
                return self._fallback(resource, self._quota_error(), ttl)

        return await self._coalescer.get_or_fetch(
            resource, lambda: self._fetch(resource, ttl)
        )

    async def refresh(self, resource: str) -> CacheResult:
        """Fetch regardless of freshness. Used by the background scheduler."""
        return await self.get(resource, force_refresh=True)

    def invalidate(self, resource: Optional[str] = None) -> int:
        """
        Drop one cache entry, or every entry when resource is None.

        An in-flight request for the resource is left alone and will
        repopulate the cache when it completes.

        Returns:
            Number of entries removed
        """
        if resource is None:
            return self.clear()
        resource = validate_resource(resource)
        if self._cache.pop(resource, None) is not None:
            logger.info(f"Invalidated cache: {resource}")
            return 1
        return 0

    def invalidate_matching(self, pattern: str) -> int:
        """
        Invalidate all cache entries whose key contains pattern.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self._cache if pattern in k]
        for key in to_delete:
            del self._cache[key]
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def peek(self, resource: str) -> Optional[CacheEntry]:
        """Return the cached entry (fresh or not) without touching upstream."""
        return self._cache.get(resource)

    def cached_resources(self) -> List[str]:
        return list(self._cache.keys())

    def now(self) -> float:
        """Current time on the client's clock (epoch seconds)."""
        return self._clock()

    def quota_blocked(self) -> bool:
        """True while upstream calls are being skipped for quota reasons."""
        return self._quota.is_blocked(self._clock())

    def background_allowed(self) -> bool:
        """True if scheduled refreshes may spend quota (see QuotaTracker.allows_background)."""
        return self._quota.allows_background(self._clock())

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    async def shutdown(self) -> None:
        """
        Stop the background scheduler and let in-flight calls finish so the
        quota they already spent still lands in the cache.
        """
        self.scheduler.shutdown()
        await self._coalescer.wait_all()
        logger.info("Fetch cache client shut down")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        now = self._clock()
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self._cache),
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
            "quota": self._quota.get_stats(now),
            "scheduler": self.scheduler.get_stats(),
        }

    # ------------------------------------------------------------------
    # Upstream path (runs once per in-flight request)
    # ------------------------------------------------------------------

    async def _fetch(self, resource: str, ttl: float) -> CacheResult:
        slot = await self._throttle.wait()

        # The quota may have dropped while we waited for our slot
        if self._quota.is_blocked(self._clock()):
            self._throttle.release(slot)
            self._stats["quota_skips"] += 1
            logger.info(f"Quota low after spacing delay, skipping {resource}")
            return self._fallback(resource, self._quota_error(), ttl)

        self._stats["transport_calls"] += 1
        try:
            response = await self._transport.fetch(resource)
        except TransportError as e:
            logger.warning(f"Fetch failed for {resource}: {e}")
            return self._failed(resource, e, ttl)
        except Exception as e:
            logger.warning(f"Fetch failed for {resource}: {e!r}")
            error = TransportError(f"Unexpected transport failure: {e!r}")
            error.__cause__ = e
            return self._failed(resource, error, ttl)

        return self._handle_response(resource, response, ttl)

    def _handle_response(
        self, resource: str, response: "TransportResponse", ttl: float
    ) -> CacheResult:
        now = self._clock()
        self._quota.record(response.quota_remaining, response.quota_reset_at)

        if self._is_quota_rejection(response):
            reset_at = self._quota.record_rejection(response.quota_reset_at, now)
            logger.warning(f"Quota rejection (HTTP {response.status}) for {resource}")
            return self._failed(
                resource,
                QuotaExhausted(f"Provider quota exhausted (HTTP {response.status})", reset_at),
                ttl,
            )

        if not response.ok:
            logger.warning(f"Upstream error HTTP {response.status} for {resource}")
            return self._failed(
                resource,
                TransportError(f"HTTP {response.status}", status=response.status),
                ttl,
            )

        if response.body is None:
            logger.warning(f"Empty payload for {resource}")
            return self._failed(
                resource,
                TransportError("Malformed response: empty body", status=response.status),
                ttl,
            )

        entry = CacheEntry(resource=resource, value=response.body, fetched_at=now)
        self._cache[resource] = entry
        self._stats["misses"] += 1
        return CacheResult.from_entry(entry, CacheSource.UPSTREAM)

    def _is_quota_rejection(self, response: "TransportResponse") -> bool:
        return (
            response.status in self.config.quota_rejection_statuses
            and response.quota_remaining == 0
        )

    def _failed(self, resource: str, error: Exception, ttl: float) -> CacheResult:
        """An upstream call was made and did not produce a value."""
        self._stats["failures"] += 1
        return self._fallback(resource, error, ttl)

    def _fallback(self, resource: str, error: Exception, ttl: float) -> CacheResult:
        """
        Serve the cached value instead of a new one, or raise ResourceUnavailable.

        An entry still inside ttl (a skipped force refresh) is served as
        fresh; anything older is served as stale.
        """
        now = self._clock()
        entry = self._cache.get(resource)
        if entry is not None and entry.is_fresh(ttl, now):
            self._stats["hits_fresh"] += 1
            logger.info(f"Upstream skipped for {resource}, cached value still fresh: {error}")
            return CacheResult.from_entry(entry, CacheSource.FRESH)

        if entry is not None:
            self._stats["hits_stale"] += 1
            logger.warning(
                f"Serving stale data for {resource} "
                f"[age={entry.age_seconds(now):.1f}s]: {error}"
            )
            return CacheResult.from_entry(entry, CacheSource.STALE)

        self._stats["misses"] += 1
        raise ResourceUnavailable(resource, str(error)) from error

    def _quota_error(self) -> QuotaExhausted:
        state = self._quota.state
        return QuotaExhausted(
            f"Quota low ({state.remaining} remaining)", reset_at=state.reset_at
        )

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        if ttl is None:
            return self.config.ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        return ttl
