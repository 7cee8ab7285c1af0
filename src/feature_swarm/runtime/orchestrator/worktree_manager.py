"""Git worktree helpers giving every agent slot its own checkout."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from ...errors import LaunchError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def worktree_key(branch: str) -> str:
    """Filesystem-safe directory name for a branch."""
    return _UNSAFE.sub("-", branch).strip("-") or "branch"


class WorktreeManager:
    """Check slot branches out under ``root`` and clean them up afterwards."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def path_for(self, branch: str) -> Path:
        return self._root / worktree_key(branch)

    def checkout(self, repo_dir: Path, branch: str) -> Path:
        """Create a worktree for an existing ``branch``.

        Raises:
            LaunchError: git refused to check the branch out.
        """
        worktree_dir = self.path_for(branch)
        if worktree_dir.exists():
            raise LaunchError(f"Worktree directory already exists: {worktree_dir}")
        worktree_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            subprocess.run(
                ["git", "worktree", "add", str(worktree_dir), branch],
                cwd=repo_dir,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            raise LaunchError(f"Cannot check out {branch}: {exc.stderr.strip() or exc}") from exc
        except OSError as exc:
            raise LaunchError(f"Cannot run git in {repo_dir}: {exc}") from exc
        return worktree_dir

    def remove(self, repo_dir: Path, worktree_dir: Path) -> None:
        """Remove a worktree; the branch and its commits stay."""
        result = subprocess.run(
            ["git", "worktree", "remove", str(worktree_dir), "--force"],
            cwd=repo_dir,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            logger.warning("Failed to remove worktree %s: %s", worktree_dir, result.stderr.strip())

    def cleanup_orphaned(self, repo_dir: Path) -> int:
        """Prune worktree metadata and remove leftover directories for ``repo_dir``."""
        if not self._root.exists() or not (repo_dir / ".git").exists():
            return 0
        listing = subprocess.run(
            ["git", "worktree", "list", "--porcelain"],
            cwd=repo_dir,
            capture_output=True,
            text=True,
        )
        removed = 0
        for line in listing.stdout.splitlines():
            if not line.startswith("worktree "):
                continue
            path = Path(line[len("worktree "):].strip())
            if path.parent == self._root.resolve() or path.parent == self._root:
                self.remove(repo_dir, path)
                removed += 1
        subprocess.run(["git", "worktree", "prune"], cwd=repo_dir, capture_output=True, text=True)
        return removed
