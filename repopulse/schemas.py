"""
Pydantic schemas for API request/response models
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel


# ===== REPOSITORY SCHEMAS =====

class RepoStatsView(BaseModel):
    """Repository summary shown in the site header and badges"""
    stars: int
    forks: int
    watchers: int
    contributors: int
    commits: int
    description: str
    updated_at: Optional[str] = None
    source: str
    stale: bool
    last_updated: Optional[str] = None


class ResourceView(BaseModel):
    """Raw GitHub payload plus cache metadata"""
    resource: str
    data: Any
    meta: Dict[str, Any]


class BuildStatusView(BaseModel):
    status: Optional[str] = None
    conclusion: Optional[str] = None
    url: Optional[str] = None


# ===== SCHEDULER SCHEMAS =====

class VisibilityUpdate(BaseModel):
    """Sent by the page when it is hidden or shown"""
    visible: bool


class RefreshOutcomeView(BaseModel):
    outcome: str
    state: str


# ===== CACHE SCHEMAS =====

class InvalidationResult(BaseModel):
    removed: int
