"""
Data models for the offline worker.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class RequestOptions(BaseModel):
    """Replayable parts of a queued request."""

    method: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class PendingRequest(BaseModel):
    """A mutating request waiting for background sync."""

    id: str
    url: str
    options: RequestOptions
    created_at: int
    attempts: int = 0
    last_error: Optional[str] = None


class ReplaySummary(BaseModel):
    """Outcome of one background sync pass."""

    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: bool = False


class WorkerState(str, Enum):
    """Lifecycle states of the offline worker."""

    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class WorkerMessageType(str, Enum):
    """Messages the hosting page may post to the worker."""

    CACHE_CLEANUP = "CACHE_CLEANUP"
    SKIP_WAITING = "SKIP_WAITING"
