"""
repopulse - FastAPI service exposing cached GitHub repository stats.

The page calls these endpoints instead of GitHub directly, so every visitor
shares one cache, one quota and one background refresher.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request

from config.settings import Settings, settings as default_settings
from repopulse.cache import CacheConfig, FetchCacheClient
from repopulse.exceptions import InvalidResource, ResourceUnavailable
from repopulse.github import GitHubStatsService
from repopulse.schemas import (
    BuildStatusView,
    InvalidationResult,
    RefreshOutcomeView,
    RepoStatsView,
    ResourceView,
    VisibilityUpdate,
)
from repopulse.transport import RequestsTransport, Transport

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "repopulse"

logger = logging.getLogger("main")


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[Transport] = None,
) -> FastAPI:
    """
    Build the app with its own client, transport and stats service.

    Args:
        settings: Defaults to the environment-loaded settings
        transport: Defaults to a RequestsTransport built from settings; a
            transport passed in is not closed on shutdown
    """
    settings = settings or default_settings
    if settings.log_level:
        logging.basicConfig(level=settings.log_level.upper())

    owns_transport = transport is None
    if transport is None:
        transport = RequestsTransport.from_settings(settings)

    client = FetchCacheClient(transport, config=CacheConfig.from_settings(settings))
    github = GitHubStatsService.from_settings(client, settings)
    client.scheduler.track(github.tracked_resources())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            client.scheduler.start()
        try:
            yield
        finally:
            await client.shutdown()
            if owns_transport:
                transport.close()

    app = FastAPI(
        title=APP_NAME,
        description="Cached GitHub repository statistics",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.client = client
    app.state.github = github

    _register_routes(app)
    return app


def _client(request: Request) -> FetchCacheClient:
    return request.app.state.client


def _github(request: Request) -> GitHubStatsService:
    return request.app.state.github


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "source": "github", "mode": "cached"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    # ===== CACHE =====

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics."""
        return _client(request).get_stats()

    @app.delete("/cache", response_model=InvalidationResult)
    def invalidate_cache(
        request: Request,
        resource: Optional[str] = Query(None, description="Exact resource URL to drop"),
        pattern: Optional[str] = Query(None, description="Drop every resource containing this"),
    ):
        """Invalidate one resource, a pattern, or (no arguments) everything."""
        client = _client(request)
        if pattern:
            return {"removed": client.invalidate_matching(pattern)}
        try:
            return {"removed": client.invalidate(resource)}
        except InvalidResource as e:
            raise HTTPException(status_code=422, detail=str(e))

    # ===== REPOSITORY =====

    @app.get("/api/repo-stats", response_model=RepoStatsView)
    async def repo_stats(request: Request):
        """
        Repository summary. Always answers: falls back to placeholder
        numbers when GitHub has never been reachable.
        """
        stats = await _github(request).load_repository_stats()
        return stats.to_dict()

    @app.get("/api/repo/{section}", response_model=ResourceView)
    async def repo_section(
        request: Request,
        section: str,
        state: str = Query(default="open", description="Issue / pull request state"),
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=10, ge=1, le=100),
        forceRefresh: bool = Query(default=False, description="Bypass cache and fetch fresh data"),
    ):
        """Raw GitHub payload for one repository section, with cache metadata."""
        github = _github(request)
        loaders = {
            "info": lambda: github.repository_info(force_refresh=forceRefresh),
            "contributors": lambda: github.contributors(force_refresh=forceRefresh),
            "commits": lambda: github.commits(page, per_page, force_refresh=forceRefresh),
            "releases": lambda: github.releases(force_refresh=forceRefresh),
            "issues": lambda: github.issues(state, force_refresh=forceRefresh),
            "pulls": lambda: github.pull_requests(state, force_refresh=forceRefresh),
        }
        loader = loaders.get(section)
        if loader is None:
            raise HTTPException(status_code=404, detail=f"Unknown section: {section}")

        try:
            result = await loader()
        except ResourceUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))

        now = _client(request).now()
        return {"resource": result.resource, "data": result.value, "meta": result.meta(now)}

    @app.get("/api/build-status", response_model=Optional[BuildStatusView])
    async def build_status(request: Request):
        """Latest GitHub Actions run, or null."""
        return await _github(request).build_status()

    # ===== BACKGROUND REFRESH =====

    @app.post("/api/visibility", response_model=RefreshOutcomeView)
    async def visibility(request: Request, update: VisibilityUpdate):
        """Page visibility signal; hidden -> visible may trigger a refresh."""
        scheduler = _client(request).scheduler
        outcome = await scheduler.notify_visibility(update.visible)
        return {"outcome": outcome.value, "state": scheduler.state.value}

    @app.post("/api/refresh", response_model=RefreshOutcomeView)
    async def manual_refresh(request: Request):
        """Run one refresh cycle now (still quota gated)."""
        scheduler = _client(request).scheduler
        outcome = await scheduler.trigger("manual")
        logger.info(f"Manual refresh: {outcome.value}")
        return {"outcome": outcome.value, "state": scheduler.state.value}


app = create_app()
