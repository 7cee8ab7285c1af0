"""HTTP server for the feature swarm runtime."""

from .api import create_app

__all__ = ["create_app"]
