"""
Background refresh scheduler.

Two triggers, an interval timer and the consumer becoming visible again,
feed one small state machine:

    IDLE --(tick | hidden->visible)--> SCHEDULED --(quota ok)--> REFRESHING --> IDLE
                                           |
                                           +--(quota low)--> IDLE (skipped)

    any --shutdown()--> STOPPED

Refreshes go through FetchCacheClient.refresh(), so a scheduled refresh
racing a caller's get() for the same resource still makes one upstream call.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional

from repopulse.exceptions import FetchCacheError

if TYPE_CHECKING:
    from .manager import FetchCacheClient

logger = logging.getLogger("cache.scheduler")


class SchedulerState(Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


class RefreshOutcome(Enum):
    """What happened to one trigger."""
    REFRESHED = "refreshed"
    SKIPPED_QUOTA = "skipped_quota"
    SKIPPED_HIDDEN = "skipped_hidden"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    BUSY = "busy"            # a cycle was already scheduled or running
    STOPPED = "stopped"
    IGNORED = "ignored"      # visibility event that was not hidden -> visible


class RefreshScheduler:
    """
    Refreshes tracked resources on a timer and when the consumer regains
    visibility, subject to quota and a visibility cooldown.
    """

    def __init__(
        self,
        client: "FetchCacheClient",
        interval: float,
        visibility_cooldown: float,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.interval = interval
        self.visibility_cooldown = visibility_cooldown
        self._clock = clock
        self._sleep = sleep

        self._state = SchedulerState.IDLE
        self._visible = True
        self._resources: List[str] = []
        self._timer: Optional["asyncio.Task[None]"] = None
        self._last_visibility_refresh: Optional[float] = None
        self._last_run: Optional[float] = None

        self._stats = {
            "cycles": 0,
            "skipped_quota": 0,
            "skipped_hidden": 0,
            "skipped_cooldown": 0,
            "busy": 0,
            "refresh_errors": 0,
        }

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def running(self) -> bool:
        """True while the interval timer is active."""
        return self._timer is not None and not self._timer.done()

    def track(self, resources: Iterable[str]) -> None:
        """Replace the list of resources refreshed by each cycle."""
        self._resources = list(dict.fromkeys(resources))

    def start(self, resources: Optional[Iterable[str]] = None) -> None:
        """
        Start the interval timer. Must be called from inside the event loop.

        Args:
            resources: Resources to refresh; if never given, each cycle
                refreshes whatever is currently cached
        """
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("Scheduler has been shut down")
        if resources is not None:
            self.track(resources)
        if self.running:
            return
        self._timer = asyncio.ensure_future(self._run_timer())
        logger.info(
            f"Background refresh every {self.interval:.0f}s "
            f"({len(self._resources)} tracked resources)"
        )

    def shutdown(self) -> None:
        """Cancel the timer. Terminal; in-flight fetches are not cancelled."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._state is not SchedulerState.STOPPED:
            logger.info("Background refresh stopped")
        self._state = SchedulerState.STOPPED

    async def notify_visibility(self, visible: bool) -> RefreshOutcome:
        """
        Feed a visibility signal from the consumer.

        Only a hidden -> visible transition can trigger a refresh, and only
        if visibility_cooldown has passed since the last one it triggered.
        """
        was_visible = self._visible
        self._visible = visible

        if self._state is SchedulerState.STOPPED:
            return RefreshOutcome.STOPPED
        if not visible or was_visible:
            return RefreshOutcome.IGNORED

        now = self._clock()
        if (
            self._last_visibility_refresh is not None
            and now - self._last_visibility_refresh < self.visibility_cooldown
        ):
            self._stats["skipped_cooldown"] += 1
            logger.debug("Visibility refresh suppressed by cooldown")
            return RefreshOutcome.SKIPPED_COOLDOWN

        if self._state is not SchedulerState.IDLE:
            self._stats["busy"] += 1
            return RefreshOutcome.BUSY

        return await self._run_cycle("visibility")

    async def trigger(self, reason: str = "manual") -> RefreshOutcome:
        """Run one refresh cycle now, through the same gates as the timer."""
        if self._state is SchedulerState.STOPPED:
            return RefreshOutcome.STOPPED
        if self._state is not SchedulerState.IDLE:
            self._stats["busy"] += 1
            return RefreshOutcome.BUSY
        return await self._run_cycle(reason)

    async def tick(self) -> RefreshOutcome:
        """One interval timer tick. Skipped while the consumer is hidden."""
        if self._state is SchedulerState.STOPPED:
            return RefreshOutcome.STOPPED
        if not self._visible:
            self._stats["skipped_hidden"] += 1
            logger.debug("Consumer hidden, skipping interval refresh")
            return RefreshOutcome.SKIPPED_HIDDEN
        return await self.trigger("interval")

    async def _run_timer(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.tick()

    async def _run_cycle(self, reason: str) -> RefreshOutcome:
        self._state = SchedulerState.SCHEDULED

        if not self._client.background_allowed():
            self._stats["skipped_quota"] += 1
            logger.info(f"Skipping {reason} refresh: quota at or below low watermark")
            self._state = SchedulerState.IDLE
            return RefreshOutcome.SKIPPED_QUOTA

        self._state = SchedulerState.REFRESHING
        if reason == "visibility":
            # Cooldown starts only once a visibility refresh actually runs
            self._last_visibility_refresh = self._clock()
        resources = self._resources or self._client.cached_resources()
        logger.info(f"Refreshing {len(resources)} resources ({reason})")
        try:
            results = await asyncio.gather(
                *(self._client.refresh(resource) for resource in resources),
                return_exceptions=True,
            )
        finally:
            # shutdown() may have landed while we were awaiting
            if self._state is SchedulerState.REFRESHING:
                self._state = SchedulerState.IDLE

        for resource, result in zip(resources, results):
            if isinstance(result, FetchCacheError):
                self._stats["refresh_errors"] += 1
                logger.warning(f"Background refresh failed for {resource}: {result}")
            elif isinstance(result, Exception):
                self._stats["refresh_errors"] += 1
                logger.error(f"Unexpected error refreshing {resource}: {result!r}")
            elif isinstance(result, BaseException):
                raise result

        self._stats["cycles"] += 1
        self._last_run = self._clock()
        return RefreshOutcome.REFRESHED

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "visible": self._visible,
            "running": self.running,
            "interval": self.interval,
            "tracked": len(self._resources),
            "last_run": self._last_run,
            **self._stats,
        }
