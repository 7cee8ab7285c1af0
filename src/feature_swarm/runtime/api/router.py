"""FastAPI routes for feature runs and issues."""

from __future__ import annotations

from fastapi import APIRouter

from .deps import RouteDeps
from .routes_features import register_feature_routes
from .routes_issues import register_issue_routes


def create_router(deps: RouteDeps) -> APIRouter:
    """Create the runtime API router.

    Args:
        deps (RouteDeps): Callables resolving the app's orchestrator, event bus,
            issue facade, and runtime config.

    Returns:
        APIRouter: Router mounted under ``/api``.
    """
    router = APIRouter(prefix="/api", tags=["api"])
    register_feature_routes(router, deps)
    register_issue_routes(router, deps)
    return router
