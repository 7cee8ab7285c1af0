"""Exception hierarchy shared by the orchestrator, adapters, and facades."""

from __future__ import annotations

from typing import Optional


class FeatureSwarmError(Exception):
    """Base class for every error raised by the runtime."""


class InvalidRequest(FeatureSwarmError):
    """Raised when a feature request fails validation; no side effects occurred."""


class IssueCreationError(FeatureSwarmError):
    """Raised when the tracking issue could not be created; no agents were spawned."""


class SpawnError(FeatureSwarmError):
    """Raised when agent slots could not be set up after the issue was created."""


class AllocationExhausted(FeatureSwarmError):
    """Raised when no collision-free branch name was found within the retry bound."""

    def __init__(self, base_name: str, attempts: int) -> None:
        super().__init__(f"Could not allocate a unique branch for '{base_name}' after {attempts} attempts")
        self.base_name = base_name
        self.attempts = attempts


class VcsError(FeatureSwarmError):
    """Raised when a version-control side effect fails."""


class BranchExists(VcsError):
    """Raised when the branch to create already exists in the repository."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Branch already exists: {name}")
        self.name = name


class NotARepository(VcsError):
    """Raised when the target directory is not inside a git repository."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Not a git repository: {path}")
        self.path = path


class LaunchError(FeatureSwarmError):
    """Raised when an agent process could not be started."""


class AdapterRuntimeError(FeatureSwarmError):
    """Describes an agent that crashed or exited non-zero after starting.

    Never raised across threads; recorded on the slot and carried by the
    completion event instead.
    """

    def __init__(self, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class UnknownRun(FeatureSwarmError):
    """Raised when a run id is not present in the registry."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Unknown run: {run_id}")
        self.run_id = run_id


class UnknownSlot(FeatureSwarmError):
    """Raised when a run has no slot with the requested agent index."""

    def __init__(self, run_id: str, agent_index: int) -> None:
        super().__init__(f"Run {run_id} has no slot {agent_index}")
        self.run_id = run_id
        self.agent_index = agent_index


class InvalidTransition(FeatureSwarmError):
    """Raised on an attempt to move a run or slot backwards or out of a terminal state."""


class IssueTrackerError(FeatureSwarmError):
    """Base class for issue tracker failures."""


class AuthError(IssueTrackerError):
    """The tracker rejected our credentials or the CLI is not logged in."""


class NetworkError(IssueTrackerError):
    """The tracker could not be reached or the call timed out."""


class RepoNotFound(IssueTrackerError):
    """The repository does not exist or is not visible to the caller."""
