"""
Shared fixtures: a controllable clock and a scriptable transport.
"""
import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from repopulse.cache import CacheConfig, FetchCacheClient
from repopulse.exceptions import TransportError
from repopulse.transport import TransportResponse

START_TIME = 1_700_000_000.0

REPO_URL = "https://api.github.com/repos/tanm-sys/forge-ec"


class FakeClock:
    """Epoch clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        # Overlapping sleeps wake at their own deadline, not the sum
        self.sleeps.append(seconds)
        deadline = self.now + seconds
        await asyncio.sleep(0)
        self.now = max(self.now, deadline)


class FakeTransport:
    """
    Transport double.

    Responses are looked up per resource: one-shot queued items first, then
    the persistent response. Items may be TransportResponse or an exception
    to raise. Set `gate` to an asyncio.Event to hold every fetch open until
    the test releases it.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self._queued: Dict[str, List[Any]] = defaultdict(list)
        self._persistent: Dict[str, Any] = {}

    def set_response(self, resource: str, item: Any) -> None:
        self._persistent[resource] = item

    def queue(self, resource: str, *items: Any) -> None:
        self._queued[resource].extend(items)

    async def fetch(self, resource: str) -> TransportResponse:
        self.calls.append(resource)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)

        if self._queued[resource]:
            item = self._queued[resource].pop(0)
        elif resource in self._persistent:
            item = self._persistent[resource]
        else:
            item = TransportError(f"no scripted response for {resource}")

        if isinstance(item, BaseException):
            raise item
        return item

    def calls_for(self, resource: str) -> int:
        return self.calls.count(resource)


def ok(body: Any, remaining: Optional[int] = None, reset_at: Optional[float] = None) -> TransportResponse:
    """A 200 response."""
    return TransportResponse(
        status=200, body=body, quota_remaining=remaining, quota_reset_at=reset_at
    )


def status(code: int, remaining: Optional[int] = None, reset_at: Optional[float] = None) -> TransportResponse:
    """A bodyless non-2xx response."""
    return TransportResponse(status=code, quota_remaining=remaining, quota_reset_at=reset_at)


async def settle(rounds: int = 10) -> None:
    """Let every ready task run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return CacheConfig(
        ttl=300,
        low_watermark=5,
        min_spacing=1.0,
        schedule_interval=600,
        visibility_cooldown=300,
        quota_backoff=60,
    )


@pytest.fixture
def client(transport, config, clock):
    return FetchCacheClient(transport, config=config, clock=clock, sleep=clock.sleep)
