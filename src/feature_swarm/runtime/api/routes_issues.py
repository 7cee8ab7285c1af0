"""Issue listing and ``gh`` pass-through routes."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query

from ...errors import AuthError, IssueTrackerError, RepoNotFound
from .deps import RouteDeps
from .schemas import RunGhRequest


def _tracker_http_error(exc: IssueTrackerError) -> HTTPException:
    if isinstance(exc, RepoNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def register_issue_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register issue listing and ``gh`` pass-through routes."""

    @router.get("/issues")
    def list_issues(repo: str = Query(..., min_length=3)) -> dict[str, Any]:
        try:
            issues = deps.facade().list_issues(repo)
        except IssueTrackerError as exc:
            raise _tracker_http_error(exc) from exc
        return {"repo": repo, "issues": [issue.to_dict() for issue in issues]}

    @router.get("/issues/projects")
    def list_project_issues(projects_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """List issues across every GitHub-backed project under the projects directory."""
        root = Path(projects_dir).expanduser() if projects_dir else deps.runtime_config().projects_dir
        issues = deps.facade().list_project_issues(root)
        return {"projects_dir": str(root), "issues": [issue.to_dict() for issue in issues]}

    @router.post("/gh")
    def run_gh(body: RunGhRequest) -> dict[str, Any]:
        try:
            output = deps.facade().run_gh(body.args, cwd=Path(body.cwd).expanduser() if body.cwd else None)
        except IssueTrackerError as exc:
            raise _tracker_http_error(exc) from exc
        return {"stdout": output}
