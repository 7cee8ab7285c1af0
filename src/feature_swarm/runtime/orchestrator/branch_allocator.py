"""Collision-free branch naming and creation for agent slots."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from ...errors import AllocationExhausted, BranchExists
from ...github.client import IssueVcsFacade

logger = logging.getLogger(__name__)


class AllocatedNames:
    """Set of branch names handed out during this process's lifetime."""

    def __init__(self) -> None:
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def reserve(self, name: str) -> bool:
        """Claim ``name``; returns ``False`` if it was already taken."""
        with self._lock:
            if name in self._names:
                return False
            self._names.add(name)
            return True

    def release(self, name: str) -> None:
        with self._lock:
            self._names.discard(name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._names


_PROCESS_NAMES = AllocatedNames()


class BranchAllocator:
    """Derive ``{prefix}/{run_id}/{agent_index}`` names and create the branches."""

    def __init__(
        self,
        facade: IssueVcsFacade,
        *,
        prefix: str = "feature",
        max_attempts: int = 5,
        names: AllocatedNames | None = None,
    ) -> None:
        self._facade = facade
        self._prefix = prefix.strip("/") or "feature"
        self._max_attempts = max(1, max_attempts)
        self._names = names if names is not None else _PROCESS_NAMES

    def base_name(self, run_id: str, agent_index: int) -> str:
        return f"{self._prefix}/{run_id}/{agent_index}"

    def candidates(self, run_id: str, agent_index: int) -> list[str]:
        base = self.base_name(run_id, agent_index)
        return [base] + [f"{base}-{attempt}" for attempt in range(2, self._max_attempts + 1)]

    def allocate(self, run_id: str, agent_index: int, repo_path: Path) -> str:
        """Reserve a unique name and create the branch in ``repo_path``.

        Names that collide in-process or already exist in the repository are
        skipped in favour of the next suffixed candidate. A name that exists
        physically stays reserved so no later run tries it again.

        Raises:
            AllocationExhausted: Every candidate collided.
            VcsError: ``repo_path`` is not a repository or git refused the branch.
        """
        for name in self.candidates(run_id, agent_index):
            if not self._names.reserve(name):
                logger.debug("Branch name %s already allocated in-process; retrying", name)
                continue
            try:
                self._facade.create_branch(repo_path, name)
            except BranchExists:
                logger.info("Branch %s already exists in %s; retrying with a suffix", name, repo_path)
                continue
            except Exception:
                self._names.release(name)
                raise
            return name
        raise AllocationExhausted(self.base_name(run_id, agent_index), self._max_attempts)

    def release_branch(self, repo_path: Path, name: str) -> None:
        """Delete a branch whose slot never launched. The name stays reserved."""
        if not self._facade.delete_branch(repo_path, name):
            logger.warning("Could not delete orphaned branch %s in %s", name, repo_path)
