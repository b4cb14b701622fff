"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent callers ask for the same resource, only one
upstream call is made and all callers share the result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    resource: str
    task: "asyncio.Task[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 1


class RequestCoalescer:
    """
    Ensures concurrent requests for the same resource share one upstream call.

    Pattern:
    - First caller for a resource starts the fetch as a task
    - Later callers for the same resource await that same task
    - The registry entry is dropped as soon as the fetch settles, before
      any waiter resumes, so the next caller starts a new fetch
    - Waiters await through asyncio.shield: a cancelled caller never
      cancels the shared call

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            "https://api.github.com/repos/o/r",
            lambda: fetch_repo(),
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    def is_in_flight(self, resource: str) -> bool:
        return resource in self._in_flight

    async def get_or_fetch(
        self,
        resource: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or start a new one.

        Args:
            resource: Key for this request
            fetch_fn: Coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            Exception: Any error from fetch_fn reaches every waiter
        """
        in_flight = self._in_flight.get(resource)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {resource} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            logger.debug(f"Initiating fetch for {resource}")
            task = asyncio.ensure_future(self._run(resource, fetch_fn))
            in_flight = InFlightRequest(resource=resource, task=task)
            self._in_flight[resource] = in_flight

        return await asyncio.shield(in_flight.task)

    async def _run(self, resource: str, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fetch_fn()
        finally:
            self._in_flight.pop(resource, None)

    async def wait_all(self) -> None:
        """Wait for every in-flight request to settle. Errors are not raised."""
        tasks = [entry.task for entry in self._in_flight.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
