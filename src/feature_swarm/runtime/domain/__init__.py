"""Domain models for orchestrator runtime state."""

from .models import (
    AgentCompleted,
    AgentHandle,
    AgentSlot,
    AgentStarted,
    FeatureRequest,
    LifecycleEvent,
    Run,
    RunTerminal,
    StatusUpdate,
)

__all__ = [
    "FeatureRequest",
    "Run",
    "AgentSlot",
    "AgentHandle",
    "LifecycleEvent",
    "AgentStarted",
    "AgentCompleted",
    "StatusUpdate",
    "RunTerminal",
]
