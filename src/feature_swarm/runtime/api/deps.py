"""Shared dependency context for runtime API route registration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ...github.client import IssueVcsFacade
from ...workers.config import AgentRuntimeConfig
from ..events.bus import EventBus
from ..orchestrator.service import FeatureOrchestrator


@dataclass(frozen=True)
class RouteDeps:
    """Route registration dependency bundle."""

    orchestrator: Callable[[], FeatureOrchestrator]
    bus: Callable[[], EventBus]
    facade: Callable[[], IssueVcsFacade]
    runtime_config: Callable[[], AgentRuntimeConfig]
