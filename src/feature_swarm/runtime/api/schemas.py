"""Pydantic request/response schemas for runtime API routes."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ExecuteFeatureRequest(BaseModel):
    """Payload for launching a feature run.

    Range and emptiness checks happen in the orchestrator so the HTTP surface
    and the CLI reject the same inputs with the same message.
    """

    directory: str
    ticket: str
    agent_count: int = 1


class ExecuteFeatureResponse(BaseModel):
    """Spawn acknowledgment for a feature run."""

    run_id: str
    branch_names: list[Optional[str]]
    run_ids: list[int]
    agent_handles: list[Optional[dict[str, Any]]] = Field(default_factory=list)


class RunGhRequest(BaseModel):
    """Arguments passed through to the ``gh`` CLI."""

    args: list[str]
    cwd: Optional[str] = None
