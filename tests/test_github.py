"""
Tests for GitHubStatsService: resource keys, stats summary and fallbacks.
"""
import pytest

from repopulse.exceptions import ResourceUnavailable, TransportError
from repopulse.github import (
    FALLBACK_STATS,
    TTL_CONFIG,
    Endpoint,
    GitHubStatsService,
    fallback_stats,
    get_ttl_for_endpoint,
)

from conftest import REPO_URL, ok, status

CONTRIBUTORS_URL = f"{REPO_URL}/contributors"
COMMITS_URL = f"{REPO_URL}/commits?page=1&per_page=100"
RUNS_URL = f"{REPO_URL}/actions/runs?per_page=1"

REPO_PAYLOAD = {
    "stargazers_count": 120,
    "forks_count": 17,
    "subscribers_count": 9,
    "description": "Elliptic curves",
    "updated_at": "2024-05-01T12:00:00Z",
}


@pytest.fixture
def service(client):
    return GitHubStatsService(client, "tanm-sys", "forge-ec")


# =============================================================================
# Resource keys
# =============================================================================

class TestResourceKeys:

    def test_repository_url(self, service):
        assert service.repository_url() == REPO_URL

    def test_query_params_are_sorted(self, service):
        assert service.commits_url(2, 30) == f"{REPO_URL}/commits?page=2&per_page=30"
        assert service.issues_url("closed") == f"{REPO_URL}/issues?state=closed"
        assert service.pulls_url() == f"{REPO_URL}/pulls?state=open"
        assert service.workflow_runs_url() == RUNS_URL

    def test_trailing_slash_in_base_url(self, client):
        service = GitHubStatsService(client, "o", "r", base_url="https://ghe.example.com/api/v3/")
        assert service.repository_url() == "https://ghe.example.com/api/v3/repos/o/r"

    def test_tracked_resources(self, service):
        assert service.tracked_resources() == [REPO_URL, CONTRIBUTORS_URL, COMMITS_URL]


def test_ttl_lookup():
    assert get_ttl_for_endpoint(Endpoint.CONTRIBUTORS, 300) == 900
    assert get_ttl_for_endpoint("unknown", 300) == 300
    assert TTL_CONFIG[Endpoint.WORKFLOW_RUNS] < TTL_CONFIG[Endpoint.REPOSITORY]


# =============================================================================
# Repository stats
# =============================================================================

@pytest.mark.asyncio
async def test_stats_from_github(service, transport):
    transport.set_response(REPO_URL, ok(REPO_PAYLOAD))
    transport.set_response(CONTRIBUTORS_URL, ok([{"login": "a"}, {"login": "b"}]))
    transport.set_response(COMMITS_URL, ok([{"sha": str(i)} for i in range(37)]))

    stats = await service.load_repository_stats()

    assert stats.stars == 120
    assert stats.forks == 17
    assert stats.watchers == 9
    assert stats.contributors == 2
    assert stats.commits == 37
    assert stats.description == "Elliptic curves"
    assert stats.source == "upstream"
    assert stats.stale is False
    assert stats.last_updated.endswith("Z")


@pytest.mark.asyncio
async def test_optional_lists_are_fetched_together(service, transport, clock):
    transport.set_response(REPO_URL, ok(REPO_PAYLOAD))
    transport.set_response(CONTRIBUTORS_URL, ok([]))
    transport.set_response(COMMITS_URL, ok([]))

    await service.load_repository_stats()

    # Both reserve their spacing slots before either one is dispatched
    assert clock.sleeps == [1.0, 2.0]
    assert transport.calls == [REPO_URL, CONTRIBUTORS_URL, COMMITS_URL]


@pytest.mark.asyncio
async def test_stats_fall_back_when_github_never_answered(service, transport):
    transport.set_response(REPO_URL, TransportError("offline"))

    stats = await service.load_repository_stats()

    assert stats.stars == FALLBACK_STATS["stars"] == 42
    assert stats.forks == 8
    assert stats.contributors == 3
    assert stats.commits == 156
    assert stats.source == "fallback"
    assert stats.stale is True
    # Optional endpoints are not attempted without repository info
    assert transport.calls == [REPO_URL]


@pytest.mark.asyncio
async def test_missing_optional_lists(service, transport):
    transport.set_response(REPO_URL, ok({"stargazers_count": 5}))
    transport.set_response(CONTRIBUTORS_URL, status(500))
    transport.set_response(COMMITS_URL, ok({"message": "Git Repository is empty."}))

    stats = await service.load_repository_stats()

    assert stats.stars == 5
    assert stats.contributors == 1
    assert stats.commits == 0
    assert stats.description  # default description


@pytest.mark.asyncio
async def test_stats_marked_stale_when_served_from_cache(service, transport, clock):
    transport.set_response(REPO_URL, ok(REPO_PAYLOAD))
    transport.set_response(CONTRIBUTORS_URL, ok([]))
    transport.set_response(COMMITS_URL, ok([]))
    await service.load_repository_stats()

    clock.advance(1000)
    transport.set_response(REPO_URL, TransportError("offline"))
    stats = await service.load_repository_stats()

    assert stats.stars == 120
    assert stats.source == "stale"
    assert stats.stale is True


@pytest.mark.asyncio
async def test_endpoint_ttls_are_applied(service, transport, clock):
    transport.set_response(REPO_URL, ok(REPO_PAYLOAD))
    transport.set_response(CONTRIBUTORS_URL, ok([]))
    transport.set_response(COMMITS_URL, ok([]))
    await service.load_repository_stats()

    clock.advance(400)
    await service.load_repository_stats()

    # repository (300s) expired, contributors (900s) still fresh
    assert transport.calls_for(REPO_URL) == 2
    assert transport.calls_for(CONTRIBUTORS_URL) == 1


def test_fallback_stats_dict():
    data = fallback_stats().to_dict()
    assert data["source"] == "fallback"
    assert data["watchers"] == 0
    assert data["last_updated"] is None


# =============================================================================
# Raw endpoints / build status
# =============================================================================

@pytest.mark.asyncio
async def test_force_refresh_passes_through(service, transport):
    transport.set_response(f"{REPO_URL}/releases", ok([{"tag_name": "v1"}]))

    await service.releases()
    await service.releases()
    result = await service.releases(force_refresh=True)

    assert result.value == [{"tag_name": "v1"}]
    assert transport.calls_for(f"{REPO_URL}/releases") == 2


@pytest.mark.asyncio
async def test_raw_endpoint_raises_when_unavailable(service, transport):
    with pytest.raises(ResourceUnavailable):
        await service.issues("open")


@pytest.mark.asyncio
async def test_build_status_latest_run(service, transport):
    transport.set_response(RUNS_URL, ok({
        "total_count": 1,
        "workflow_runs": [{
            "status": "completed",
            "conclusion": "success",
            "html_url": "https://github.com/tanm-sys/forge-ec/actions/runs/1",
        }],
    }))

    assert await service.build_status() == {
        "status": "completed",
        "conclusion": "success",
        "url": "https://github.com/tanm-sys/forge-ec/actions/runs/1",
    }


@pytest.mark.asyncio
async def test_build_status_none_without_runs(service, transport):
    transport.set_response(RUNS_URL, ok({"total_count": 0, "workflow_runs": []}))
    assert await service.build_status() is None


@pytest.mark.asyncio
async def test_build_status_none_when_unavailable(service, transport):
    transport.set_response(RUNS_URL, status(404))
    assert await service.build_status() is None
