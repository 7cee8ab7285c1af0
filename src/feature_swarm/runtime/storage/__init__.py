"""File-backed storage for runs, events, and config."""

from .container import Container

__all__ = ["Container"]
