"""Minimum spacing between upstream calls."""

import asyncio
import time
from typing import Awaitable, Callable, Optional


class RequestThrottle:
    """
    Keeps at least min_spacing seconds between two upstream dispatches,
    whatever resource they are for.

    Slots are reserved before sleeping, so concurrent callers queue up one
    spacing apart instead of all waking at the same time.
    """

    def __init__(
        self,
        min_spacing: float,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_spacing = min_spacing
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch: Optional[float] = None

    def reserve(self) -> float:
        """
        Claim the next dispatch slot.

        Returns:
            The slot time (epoch seconds); now if no wait is needed
        """
        now = self._clock()
        if self._last_dispatch is None:
            slot = now
        else:
            slot = max(now, self._last_dispatch + self.min_spacing)
        self._last_dispatch = slot
        return slot

    async def wait(self) -> float:
        """Reserve a slot and sleep until it. Returns the slot."""
        slot = self.reserve()
        delay = slot - self._clock()
        if delay > 0:
            await self._sleep(delay)
        return slot

    def release(self, slot: float) -> None:
        """
        Give back a slot that was not used for a dispatch.

        Only the most recent slot can be given back; an earlier one already
        has later reservations spaced after it.
        """
        if self._last_dispatch == slot:
            self._last_dispatch = slot - self.min_spacing

    @property
    def last_dispatch(self) -> Optional[float]:
        return self._last_dispatch
