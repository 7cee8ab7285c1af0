"""Multi-agent feature orchestration: one issue, N agents, N branches."""

__version__ = "0.3.0"
