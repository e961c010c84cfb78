"""Pydantic request/response schemas for the run API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class CreatePlanRequest(BaseModel):
    """Payload for registering a plan."""

    content: str = Field(min_length=1)
    title: Optional[str] = None
    source: str = "api"


class StartRunRequest(BaseModel):
    """Options for starting a run; unset fields fall back to configuration."""

    max_iterations: Optional[int] = Field(default=None, ge=1)
    extended_mode: bool = False
    team_mode: bool = False
    flow: Literal["dual", "single"] = "dual"
    model: Optional[str] = None
    max_turns: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)


class RunStatusResponse(BaseModel):
    """Snapshot of one plan's run."""

    plan_id: str
    state: Literal["idle", "running", "completed", "stopped", "cancelled", "failed"]
    iteration: int = 0
    max_iterations: int = 0
    extended_triggered: bool = False
    error: Optional[str] = None
    dropped_events: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
