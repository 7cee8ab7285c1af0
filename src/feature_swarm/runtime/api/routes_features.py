"""Feature execution and run inspection routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from ...errors import InvalidRequest, IssueCreationError, SpawnError, UnknownRun
from ..domain.models import FeatureRequest
from .deps import RouteDeps
from .schemas import ExecuteFeatureRequest, ExecuteFeatureResponse


def register_feature_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register execute, list, detail, events, and cancel routes."""

    @router.post("/features/execute", response_model=ExecuteFeatureResponse)
    def execute_feature(body: ExecuteFeatureRequest) -> ExecuteFeatureResponse:
        """Create the tracking issue and spawn the requested agents.

        Returns once every launch is acknowledged; progress arrives over ``/ws``.
        """
        request = FeatureRequest(directory=body.directory, description=body.ticket, agent_count=body.agent_count)
        try:
            execution = deps.orchestrator().execute_feature(request)
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except IssueCreationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except SpawnError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return ExecuteFeatureResponse(
            run_id=execution.run_id,
            branch_names=execution.branch_names,
            run_ids=execution.slot_ids,
            agent_handles=[handle.to_dict() if handle else None for handle in execution.agent_handles],
        )

    @router.get("/runs")
    def list_runs() -> dict[str, Any]:
        runs = deps.orchestrator().list_runs()
        return {"runs": [run.to_dict() for run in reversed(runs)]}

    @router.get("/runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        try:
            run = deps.orchestrator().get_run(run_id)
        except UnknownRun as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"run": run.to_dict(), "terminal": run.is_terminal}

    @router.get("/runs/{run_id}/events")
    def get_run_events(run_id: str, after: int = Query(0, ge=0)) -> dict[str, Any]:
        """Return the run's event log, optionally only records with ``seq > after``."""
        try:
            deps.orchestrator().get_run(run_id)
        except UnknownRun as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        events = [record for record in deps.bus().history(run_id) if int(record.get("seq") or 0) > after]
        return {"run_id": run_id, "events": events}

    @router.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str) -> dict[str, Any]:
        try:
            run = deps.orchestrator().cancel_run(run_id)
        except UnknownRun as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"run": run.to_dict(), "terminal": run.is_terminal}
