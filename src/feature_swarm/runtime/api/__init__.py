"""HTTP API for feature runs."""

from .deps import RouteDeps
from .router import create_router

__all__ = ["RouteDeps", "create_router"]
