"""
Transport layer: the one place that talks HTTP.

FetchCacheClient only depends on the Transport protocol below, so tests (and
other providers) can swap in anything with an async fetch(resource).
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import requests

from repopulse.cache.quota import GITHUB_QUOTA_HEADERS, HeaderQuotaParser
from repopulse.exceptions import TransportError

logger = logging.getLogger("transport")

GITHUB_ACCEPT = "application/vnd.github.v3+json"


@dataclass(frozen=True)
class TransportResponse:
    """Status, decoded body and any quota metadata of one upstream call."""
    status: int
    body: Any = None
    quota_remaining: Optional[int] = None
    quota_reset_at: Optional[float] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """
    Anything that can fetch a resource.

    Implementations raise TransportError for network-level failures and
    return (not raise) non-2xx responses.
    """

    async def fetch(self, resource: str) -> TransportResponse:
        ...


class RequestsTransport:
    """
    HTTP GET transport backed by a requests.Session.

    The blocking call runs in a worker thread so the event loop stays free;
    the cache only ever sees the finished TransportResponse.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = "repopulse",
        accept: str = GITHUB_ACCEPT,
        quota_parser: HeaderQuotaParser = GITHUB_QUOTA_HEADERS,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout = timeout
        self.quota_parser = quota_parser
        self._clock = clock
        self._session = session or requests.Session()
        self._headers: Dict[str, str] = {
            "Accept": accept,
            "User-Agent": user_agent,
        }

    @classmethod
    def from_settings(cls, settings: Any) -> "RequestsTransport":
        return cls(
            timeout=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
        )

    async def fetch(self, resource: str) -> TransportResponse:
        return await asyncio.to_thread(self._fetch_blocking, resource)

    def _fetch_blocking(self, resource: str) -> TransportResponse:
        try:
            response = self._session.get(
                resource,
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Request to {resource} failed: {e}") from e

        headers = dict(response.headers)
        remaining, reset_at = self.quota_parser.parse(headers, self._clock())

        body: Any = None
        if 200 <= response.status_code < 300:
            try:
                body = response.json()
            except ValueError as e:
                raise TransportError(
                    f"Malformed JSON from {resource}: {e}",
                    status=response.status_code,
                ) from e
        else:
            logger.debug(f"HTTP {response.status_code} from {resource}")

        return TransportResponse(
            status=response.status_code,
            body=body,
            quota_remaining=remaining,
            quota_reset_at=reset_at,
            headers=headers,
        )

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()
