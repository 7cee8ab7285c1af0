"""Run registry, branch allocation, agent adapters, and the feature orchestrator."""

from .agent_adapter import (
    AgentAdapter,
    BackgroundAgentAdapter,
    ExitInfo,
    ScriptedAgentAdapter,
    TerminalAgentAdapter,
    create_agent_adapter,
)
from .branch_allocator import AllocatedNames, BranchAllocator
from .registry import RegistryUpdate, RunRegistry, resolve_overall_status
from .service import FeatureExecution, FeatureOrchestrator, create_orchestrator
from .worktree_manager import WorktreeManager

__all__ = [
    "AgentAdapter",
    "AllocatedNames",
    "BackgroundAgentAdapter",
    "BranchAllocator",
    "ExitInfo",
    "FeatureExecution",
    "FeatureOrchestrator",
    "RegistryUpdate",
    "RunRegistry",
    "ScriptedAgentAdapter",
    "TerminalAgentAdapter",
    "WorktreeManager",
    "create_agent_adapter",
    "create_orchestrator",
    "resolve_overall_status",
]
