"""
GitHub repository statistics built on the fetch cache.

Every GitHub endpoint is one cache resource (its full URL). The service never
raises for upstream trouble: repository stats fall back to built-in defaults
when nothing has ever been fetched.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from repopulse.cache import CacheResult, FetchCacheClient
from repopulse.exceptions import ResourceUnavailable

logger = logging.getLogger("github")


class Endpoint:
    REPOSITORY = "repository"
    CONTRIBUTORS = "contributors"
    COMMITS = "commits"
    RELEASES = "releases"
    ISSUES = "issues"
    PULLS = "pulls"
    WORKFLOW_RUNS = "workflow_runs"


# Freshness window by endpoint (in seconds)
TTL_CONFIG: Dict[str, float] = {
    Endpoint.REPOSITORY: 300,       # 5 minutes
    Endpoint.CONTRIBUTORS: 900,     # 15 minutes
    Endpoint.COMMITS: 300,          # 5 minutes
    Endpoint.RELEASES: 1800,        # 30 minutes
    Endpoint.ISSUES: 300,
    Endpoint.PULLS: 300,
    Endpoint.WORKFLOW_RUNS: 120,    # 2 minutes, CI status moves fast
}

# Shown when GitHub has never answered
FALLBACK_STATS = {
    "stars": 42,
    "forks": 8,
    "contributors": 3,
    "commits": 156,
}

DEFAULT_DESCRIPTION = (
    "Modern Rust library for secure, high-performance elliptic curve cryptography"
)


@dataclass
class RepoStats:
    """Summary numbers for the repository header/badges."""
    stars: int
    forks: int
    watchers: int
    contributors: int
    commits: int
    description: str
    updated_at: Optional[str]
    source: str                 # fresh / upstream / stale / fallback
    stale: bool
    last_updated: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_ttl_for_endpoint(endpoint: str, default: float) -> float:
    """Freshness window for an endpoint, or default if it has none."""
    return TTL_CONFIG.get(endpoint, default)


class GitHubStatsService:
    """
    Resource builders and summaries for one repository.

    Usage:
        service = GitHubStatsService(client, "tanm-sys", "forge-ec")
        stats = await service.load_repository_stats()
    """

    def __init__(
        self,
        client: FetchCacheClient,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
    ):
        self._client = client
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, client: FetchCacheClient, settings: Any) -> "GitHubStatsService":
        return cls(
            client,
            owner=settings.github_owner,
            repo=settings.github_repo,
            base_url=settings.github_api_base_url,
        )

    # ===== RESOURCE KEYS =====

    def _url(self, suffix: str = "", params: Optional[Dict[str, Any]] = None) -> str:
        url = f"{self.base_url}/repos/{self.owner}/{self.repo}{suffix}"
        if params:
            # Sorted so equal queries map to the same cache key
            url = f"{url}?{urlencode(sorted(params.items()))}"
        return url

    def repository_url(self) -> str:
        return self._url()

    def contributors_url(self) -> str:
        return self._url("/contributors")

    def commits_url(self, page: int = 1, per_page: int = 10) -> str:
        return self._url("/commits", {"page": page, "per_page": per_page})

    def releases_url(self) -> str:
        return self._url("/releases")

    def issues_url(self, state: str = "open") -> str:
        return self._url("/issues", {"state": state})

    def pulls_url(self, state: str = "open") -> str:
        return self._url("/pulls", {"state": state})

    def workflow_runs_url(self) -> str:
        return self._url("/actions/runs", {"per_page": 1})

    def tracked_resources(self) -> List[str]:
        """Resources the background scheduler keeps warm."""
        return [
            self.repository_url(),
            self.contributors_url(),
            self.commits_url(1, 100),
        ]

    # ===== RAW ENDPOINTS =====

    async def _get(self, endpoint: str, url: str, force_refresh: bool = False) -> CacheResult:
        ttl = get_ttl_for_endpoint(endpoint, self._client.config.ttl)
        return await self._client.get(url, ttl=ttl, force_refresh=force_refresh)

    async def repository_info(self, force_refresh: bool = False) -> CacheResult:
        return await self._get(Endpoint.REPOSITORY, self.repository_url(), force_refresh)

    async def contributors(self, force_refresh: bool = False) -> CacheResult:
        return await self._get(Endpoint.CONTRIBUTORS, self.contributors_url(), force_refresh)

    async def commits(
        self, page: int = 1, per_page: int = 10, force_refresh: bool = False
    ) -> CacheResult:
        return await self._get(Endpoint.COMMITS, self.commits_url(page, per_page), force_refresh)

    async def releases(self, force_refresh: bool = False) -> CacheResult:
        return await self._get(Endpoint.RELEASES, self.releases_url(), force_refresh)

    async def issues(self, state: str = "open", force_refresh: bool = False) -> CacheResult:
        return await self._get(Endpoint.ISSUES, self.issues_url(state), force_refresh)

    async def pull_requests(self, state: str = "open", force_refresh: bool = False) -> CacheResult:
        return await self._get(Endpoint.PULLS, self.pulls_url(state), force_refresh)

    # ===== SUMMARIES =====

    async def load_repository_stats(self) -> RepoStats:
        """
        Build the stats summary.

        Repository info is required; without it the built-in defaults are
        returned. Contributors and commits are optional and count as zero
        entries when unavailable.
        """
        try:
            info = await self.repository_info()
        except ResourceUnavailable as e:
            logger.warning(f"Using fallback GitHub data: {e}")
            return fallback_stats()

        contributors, commits = await asyncio.gather(
            self._optional_list(self.contributors()),
            self._optional_list(self.commits(1, 100)),
        )

        repo = info.value if isinstance(info.value, dict) else {}
        return RepoStats(
            stars=_safe_int(repo.get("stargazers_count")),
            forks=_safe_int(repo.get("forks_count")),
            watchers=_safe_int(repo.get("subscribers_count")),
            contributors=len(contributors) or 1,
            commits=len(commits),
            description=repo.get("description") or DEFAULT_DESCRIPTION,
            updated_at=repo.get("updated_at"),
            source=info.source.value,
            stale=info.stale,
            last_updated=info.last_updated,
        )

    async def build_status(self) -> Optional[Dict[str, Any]]:
        """Latest GitHub Actions run as {status, conclusion, url}, or None."""
        try:
            result = await self._get(Endpoint.WORKFLOW_RUNS, self.workflow_runs_url())
        except ResourceUnavailable as e:
            logger.warning(f"Failed to get build status: {e}")
            return None

        runs = result.value.get("workflow_runs") if isinstance(result.value, dict) else None
        if not runs:
            return None
        latest = runs[0]
        return {
            "status": latest.get("status"),
            "conclusion": latest.get("conclusion"),
            "url": latest.get("html_url"),
        }

    async def _optional_list(self, pending) -> List[Any]:
        try:
            result = await pending
        except ResourceUnavailable as e:
            logger.info(f"Optional GitHub data unavailable: {e}")
            return []
        return result.value if isinstance(result.value, list) else []


def fallback_stats() -> RepoStats:
    """Placeholder stats for when GitHub has never answered."""
    return RepoStats(
        stars=FALLBACK_STATS["stars"],
        forks=FALLBACK_STATS["forks"],
        watchers=0,
        contributors=FALLBACK_STATS["contributors"],
        commits=FALLBACK_STATS["commits"],
        description=DEFAULT_DESCRIPTION,
        updated_at=None,
        source="fallback",
        stale=True,
        last_updated=None,
    )


def _safe_int(value, default: int = 0) -> int:
    """Safely convert value to int."""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
