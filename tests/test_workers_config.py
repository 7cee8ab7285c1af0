from __future__ import annotations

from pathlib import Path

from feature_swarm.workers.config import DEFAULT_AGENT_COMMAND, AgentRuntimeConfig, get_agent_runtime_config


def test_defaults_when_config_is_empty() -> None:
    cfg = get_agent_runtime_config(config={})

    assert cfg.mode == "background"
    assert cfg.command == DEFAULT_AGENT_COMMAND
    assert cfg.argv == ["claude", "-p"]
    assert cfg.branch_prefix == "feature"
    assert cfg.branch_max_attempts == 5
    assert cfg.launch_concurrency == 5
    assert cfg.launch_timeout_seconds == 60.0
    assert cfg.issue_labels == ()
    assert cfg.keep_worktrees is False


def test_yaml_sections_override_defaults() -> None:
    cfg = get_agent_runtime_config(
        config={
            "agents": {"mode": "Terminal", "command": "codex exec --full-auto", "keep_worktrees": True},
            "branches": {"prefix": "/swarm/", "max_attempts": 9},
            "orchestrator": {"launch_concurrency": 2, "launch_timeout_seconds": 7.5},
            "issues": {"labels": ["swarm", " ", "ai"], "projects_dir": "/tmp/projects"},
        }
    )

    assert cfg.mode == "terminal"
    assert cfg.argv == ["codex", "exec", "--full-auto"]
    assert cfg.keep_worktrees is True
    assert cfg.branch_prefix == "swarm"
    assert cfg.branch_max_attempts == 9
    assert cfg.launch_concurrency == 2
    assert cfg.launch_timeout_seconds == 7.5
    assert cfg.issue_labels == ("swarm", "ai")
    assert cfg.projects_dir == Path("/tmp/projects")


def test_malformed_values_fall_back() -> None:
    cfg = get_agent_runtime_config(
        config={
            "agents": {"mode": "docker", "command": "   "},
            "branches": {"prefix": "bad prefix", "max_attempts": "many"},
            "orchestrator": {"launch_concurrency": 0, "launch_timeout_seconds": -1},
            "issues": {"labels": "swarm"},
        }
    )

    assert cfg.mode == "background"
    assert cfg.command == DEFAULT_AGENT_COMMAND
    assert cfg.branch_prefix == "feature"
    assert cfg.branch_max_attempts == 5
    assert cfg.launch_concurrency == 5
    assert cfg.launch_timeout_seconds == 60.0
    assert cfg.issue_labels == ()


def test_cli_overrides_win() -> None:
    cfg = get_agent_runtime_config(
        config={"agents": {"mode": "terminal", "command": "claude -p"}},
        cli_mode="scripted",
        cli_command="my-agent --yes",
    )

    assert cfg.mode == "scripted"
    assert cfg.command == "my-agent --yes"


def test_config_is_frozen() -> None:
    cfg = AgentRuntimeConfig()
    try:
        cfg.mode = "terminal"  # type: ignore[misc]
    except AttributeError:
        pass
    else:
        raise AssertionError("AgentRuntimeConfig should be immutable")
