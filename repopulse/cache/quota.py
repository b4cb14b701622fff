"""
Provider quota (rate limit) tracking.

The provider only reveals its quota in response metadata, so the state here
is a snapshot of the most recent response that carried any. Header names are
provider specific; HeaderQuotaParser makes them configurable and the GitHub
X-RateLimit-* names are the default.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger("cache.quota")


@dataclass(frozen=True)
class QuotaState:
    """Last known quota. None means the provider has not told us yet."""
    remaining: Optional[int] = None
    reset_at: Optional[float] = None  # epoch seconds


class QuotaTracker:
    """
    Holds the QuotaState and answers "may we call upstream right now?".

    The state is replaced only by record()/record_rejection(), which the
    client calls from its response handling path.
    """

    def __init__(self, low_watermark: int, backoff_seconds: float):
        self.low_watermark = low_watermark
        self.backoff_seconds = backoff_seconds
        self._state = QuotaState()

    @property
    def state(self) -> QuotaState:
        return self._state

    def is_blocked(self, now: float) -> bool:
        """
        True while remaining <= low_watermark and the reset time is ahead.

        An unknown reset time never blocks: without it we could not tell
        when to try again.
        """
        state = self._state
        if state.remaining is None or state.reset_at is None:
            return False
        return state.remaining <= self.low_watermark and now < state.reset_at

    def allows_background(self, now: float) -> bool:
        """
        True if speculative (background) calls may spend quota.

        Stricter than is_blocked(): a remaining count at or below the
        watermark holds background work back even when the reset time is
        unknown. Only a known reset time that has passed lifts it.
        """
        state = self._state
        if state.remaining is None or state.remaining > self.low_watermark:
            return True
        return state.reset_at is not None and now >= state.reset_at

    def record(self, remaining: Optional[int], reset_at: Optional[float]) -> None:
        """Merge quota metadata from a response. Missing fields keep their old value."""
        if remaining is None and reset_at is None:
            return
        new_state = QuotaState(
            remaining=remaining if remaining is not None else self._state.remaining,
            reset_at=reset_at if reset_at is not None else self._state.reset_at,
        )
        if new_state != self._state:
            logger.debug(
                f"Quota updated: remaining={new_state.remaining} "
                f"reset_at={new_state.reset_at}"
            )
        self._state = new_state

    def record_rejection(self, reset_at: Optional[float], now: float) -> float:
        """
        Record an explicit "no quota left" response.

        Returns:
            The reset time in effect; now + backoff_seconds when the
            provider did not send one (or sent one already in the past)
        """
        if reset_at is None or reset_at <= now:
            reset_at = now + self.backoff_seconds
        self._state = QuotaState(remaining=0, reset_at=reset_at)
        logger.warning(f"Quota exhausted, deferring upstream calls until {reset_at:.0f}")
        return reset_at

    def get_stats(self, now: float) -> Dict[str, Any]:
        state = self._state
        return {
            "remaining": state.remaining,
            "reset_at": state.reset_at,
            "low_watermark": self.low_watermark,
            "blocked": self.is_blocked(now),
        }


@dataclass(frozen=True)
class HeaderQuotaParser:
    """
    Extracts (remaining, reset_at) from response headers.

    reset_header is read as epoch seconds. If it is absent, a Retry-After
    style header (seconds from now) is used instead. Header lookup is case
    insensitive.
    """
    remaining_header: str = "X-RateLimit-Remaining"
    reset_header: Optional[str] = "X-RateLimit-Reset"
    retry_after_header: Optional[str] = "Retry-After"

    def parse(
        self,
        headers: Mapping[str, str],
        now: float,
    ) -> Tuple[Optional[int], Optional[float]]:
        lowered = {str(k).lower(): v for k, v in headers.items()}

        remaining = _safe_int(lowered.get(self.remaining_header.lower()))

        reset_at: Optional[float] = None
        if self.reset_header:
            reset_at = _safe_float(lowered.get(self.reset_header.lower()))
        if reset_at is None and self.retry_after_header:
            retry_after = _safe_float(lowered.get(self.retry_after_header.lower()))
            if retry_after is not None:
                reset_at = now + retry_after

        return remaining, reset_at


# GitHub REST API: https://docs.github.com/rest/rate-limit
GITHUB_QUOTA_HEADERS = HeaderQuotaParser()


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None
