from __future__ import annotations

from pathlib import Path

from .file_repos import FileConfigRepository


STATE_FILES = {
    "runs": "runs.yaml",
    "events": "events.jsonl",
    "config": "config.yaml",
}

SCHEMA_VERSION = 1

DEFAULT_CONFIG: dict[str, dict[str, object]] = {
    "orchestrator": {"launch_concurrency": 5, "launch_timeout_seconds": 60},
    "branches": {"prefix": "feature", "max_attempts": 5},
    "agents": {"mode": "background", "command": "claude -p", "keep_worktrees": False},
    "issues": {"labels": [], "projects_dir": "~/.claude/projects"},
}


def default_state_root() -> Path:
    return Path("~/.feature_swarm").expanduser()


def ensure_state_root(state_dir: Path) -> Path:
    """Create the state directory layout and seed missing config sections."""
    state_root = state_dir
    state_root.mkdir(parents=True, exist_ok=True)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    (state_root / "worktrees").mkdir(parents=True, exist_ok=True)
    (state_root / "agent_logs").mkdir(parents=True, exist_ok=True)

    config_repo = FileConfigRepository(state_root / "config.yaml", state_root / "config.lock")
    config = config_repo.load()
    config["schema_version"] = SCHEMA_VERSION
    for section, defaults in DEFAULT_CONFIG.items():
        current = config.get(section)
        merged = dict(defaults)
        if isinstance(current, dict):
            merged.update(current)
        config[section] = merged
    config_repo.save(config)

    return state_root
