"""Dependency container for runtime repositories."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .bootstrap import default_state_root, ensure_state_root
from .file_repos import FileConfigRepository, FileEventRepository, FileRunRepository


class Container:
    """Wire file-backed repositories rooted at one state directory."""
    def __init__(self, state_dir: Optional[Path] = None) -> None:
        """Initialize the Container.

        Args:
            state_dir (Optional[Path]): Directory holding runs, events, config,
                agent logs, and worktrees. Defaults to ``~/.feature_swarm``.
        """
        self.state_root = ensure_state_root((state_dir or default_state_root()).expanduser().resolve())

        self.runs = FileRunRepository(self.state_root / "runs.yaml", self.state_root / "runs.lock")
        self.events = FileEventRepository(self.state_root / "events.jsonl", self.state_root / "events.lock")
        self.config = FileConfigRepository(self.state_root / "config.yaml", self.state_root / "config.lock")

    @property
    def worktrees_dir(self) -> Path:
        return self.state_root / "worktrees"

    @property
    def agent_logs_dir(self) -> Path:
        return self.state_root / "agent_logs"
