"""Pydantic snapshot models.

Snapshots are frozen copies of container/store state taken at one point in
time. They never trigger a fetch and never change after creation, which makes
them safe to hand to observers, log, or compare across transitions.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContainerStatus(BaseModel):
    """State of a single cache entry, including its derived flags."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(..., min_length=1)
    value: Any = None
    is_ready: bool = False
    is_pending: bool = False
    error: Optional[BaseException] = None
    last_modified: float
    # math.inf = never expires, -math.inf = forced stale
    expires_at: float
    has_expired: bool = False
    in_failstate: bool = False
    should_fetch: bool = False
    version: int = Field(default=0, ge=0)


class StoreStatus(BaseModel):
    """Store-wide flags and the current fetch queue."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    is_ready: bool = False
    is_pending: bool = False
    has_all: bool = False
    in_failstate: bool = False
    error: Optional[BaseException] = None
    queue: tuple[str, ...] = ()
    size: int = Field(default=0, ge=0)


__all__ = ["ContainerStatus", "StoreStatus"]
