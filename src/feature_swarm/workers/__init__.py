"""Agent launch configuration."""

from .config import AgentRuntimeConfig, get_agent_runtime_config

__all__ = ["AgentRuntimeConfig", "get_agent_runtime_config"]
