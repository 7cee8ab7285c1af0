"""Runtime: domain, storage, events, and the orchestrator service."""
