"""Parse agent, branch, and launch configuration into frozen runtime settings."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, cast

AgentMode = Literal["background", "terminal", "scripted"]

_VALID_MODES = {"background", "terminal", "scripted"}
DEFAULT_AGENT_COMMAND = "claude -p"


@dataclass(frozen=True)
class AgentRuntimeConfig:
    """Fully resolved settings for launching and supervising agents.

    Attributes:
        mode: Which adapter variant launches agents.
        command: Shell-style command line for the agent CLI; the prompt arrives on stdin.
        keep_worktrees: Keep each slot's worktree after the agent exits.
        branch_prefix: First path segment of every allocated branch name.
        branch_max_attempts: Collision retries before allocation gives up.
        launch_concurrency: Thread pool size used for concurrent launches.
        launch_timeout_seconds: How long ``execute_feature`` waits for spawn acknowledgment.
        issue_labels: Labels attached to every tracking issue.
        projects_dir: Directory scanned when listing issues across projects.
    """

    mode: AgentMode = "background"
    command: str = DEFAULT_AGENT_COMMAND
    keep_worktrees: bool = False
    branch_prefix: str = "feature"
    branch_max_attempts: int = 5
    launch_concurrency: int = 5
    launch_timeout_seconds: float = 60.0
    issue_labels: tuple[str, ...] = field(default_factory=tuple)
    projects_dir: Path = Path("~/.claude/projects")

    @property
    def argv(self) -> list[str]:
        return shlex.split(self.command)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _clean_branch_prefix(value: Any) -> str:
    prefix = str(value or "").strip().strip("/")
    if not prefix or any(ch.isspace() for ch in prefix) or ".." in prefix:
        return "feature"
    return prefix


def get_agent_runtime_config(
    *,
    config: dict[str, Any],
    cli_mode: Optional[str] = None,
    cli_command: Optional[str] = None,
) -> AgentRuntimeConfig:
    """Resolve launch settings from the YAML config plus optional CLI overrides.

    Args:
        config (dict[str, Any]): Parsed ``config.yaml`` mapping.
        cli_mode (Optional[str]): Adapter mode passed on the command line.
        cli_command (Optional[str]): Agent command passed on the command line.

    Returns:
        AgentRuntimeConfig: Normalized settings; unknown or malformed values fall
        back to defaults.
    """
    agents_cfg = _as_dict(config.get("agents"))
    branches_cfg = _as_dict(config.get("branches"))
    orchestrator_cfg = _as_dict(config.get("orchestrator"))
    issues_cfg = _as_dict(config.get("issues"))

    mode = str(cli_mode or agents_cfg.get("mode") or "background").strip().lower()
    if mode not in _VALID_MODES:
        mode = "background"
    command = str(cli_command or agents_cfg.get("command") or DEFAULT_AGENT_COMMAND).strip() or DEFAULT_AGENT_COMMAND

    raw_labels = issues_cfg.get("labels")
    labels = tuple(str(label).strip() for label in raw_labels if str(label).strip()) if isinstance(raw_labels, list) else ()

    raw_timeout = orchestrator_cfg.get("launch_timeout_seconds")
    timeout = float(raw_timeout) if isinstance(raw_timeout, (int, float)) and raw_timeout > 0 else 60.0

    return AgentRuntimeConfig(
        mode=cast(AgentMode, mode),
        command=command,
        keep_worktrees=bool(agents_cfg.get("keep_worktrees", False)),
        branch_prefix=_clean_branch_prefix(branches_cfg.get("prefix")),
        branch_max_attempts=_positive_int(branches_cfg.get("max_attempts"), 5),
        launch_concurrency=_positive_int(orchestrator_cfg.get("launch_concurrency"), 5),
        launch_timeout_seconds=timeout,
        issue_labels=labels,
        projects_dir=Path(str(issues_cfg.get("projects_dir") or "~/.claude/projects")).expanduser(),
    )
