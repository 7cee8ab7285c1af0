"""Issue tracker and version-control facade backed by the ``gh`` and ``git`` CLIs."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from ..errors import (
    AuthError,
    BranchExists,
    IssueTrackerError,
    NetworkError,
    NotARepository,
    RepoNotFound,
    VcsError,
)

logger = logging.getLogger(__name__)

_GITHUB_REMOTE = re.compile(r"github\.com[:/](?P<repo>[^/\s]+/[^/\s]+?)(?:\.git)?/?$")
_AUTH_MARKERS = ("gh auth login", "authentication", "not logged", "bad credentials", "http 401", "http 403")
_NOT_FOUND_MARKERS = ("could not resolve to a repository", "http 404", "not found")


@dataclass(frozen=True)
class IssueRef:
    """Identifier of a created issue."""
    repo: str
    number: int
    url: str

    def __str__(self) -> str:
        return f"{self.repo}#{self.number}"


@dataclass
class IssueSummary:
    """One issue as listed by the tracker."""
    repo: str
    number: int
    title: str
    url: str
    state: str
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IssueVcsFacade(Protocol):
    """Contract the orchestrator needs from the issue tracker and VCS."""

    def resolve_repo(self, directory: Path) -> str:
        """Return the ``owner/name`` slug of the repository checked out at ``directory``."""
        ...

    def create_issue(self, repo: str, title: str, body: str, labels: Sequence[str] = ()) -> IssueRef:
        """Create an issue; raises ``AuthError``, ``NetworkError``, or ``RepoNotFound``."""
        ...

    def list_issues(self, repo: str) -> list[IssueSummary]:
        """List the repository's issues."""
        ...

    def list_project_issues(self, projects_dir: Path) -> list[IssueSummary]:
        """List issues of every GitHub-backed repository under ``projects_dir``."""
        ...

    def run_gh(self, args: Sequence[str], *, cwd: Optional[Path] = None) -> str:
        """Run a raw ``gh`` command and return its stdout."""
        ...

    def create_branch(self, repo_path: Path, name: str) -> None:
        """Create ``name`` at HEAD; raises ``BranchExists`` or ``NotARepository``."""
        ...

    def delete_branch(self, repo_path: Path, name: str) -> bool:
        """Delete a local branch, returning whether it was removed."""
        ...


def parse_github_repo(url: str) -> Optional[str]:
    """Extract ``owner/name`` from an https or ssh GitHub remote URL."""
    match = _GITHUB_REMOTE.search(str(url or "").strip())
    return match.group("repo") if match else None


def _classify_gh_error(stderr: str) -> IssueTrackerError:
    text = (stderr or "").strip()
    lowered = text.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthError(text or "gh is not authenticated")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return RepoNotFound(text or "repository not found")
    return NetworkError(text or "gh command failed")


class GhCliFacade:
    """Talk to GitHub through ``gh`` and to local repositories through ``git``."""

    def __init__(self, *, gh_binary: str = "gh", git_binary: str = "git", timeout: float = 60.0) -> None:
        self._gh = gh_binary
        self._git_binary = git_binary
        self._timeout = timeout

    # -- gh -----------------------------------------------------------------

    def run_gh(self, args: Sequence[str], *, cwd: Optional[Path] = None) -> str:
        """Run an arbitrary ``gh`` command and return its stdout.

        Raises:
            IssueTrackerError: Subclass chosen from the command's stderr.
        """
        try:
            result = subprocess.run(
                [self._gh, *args],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise AuthError(f"{self._gh} CLI not found; install it and run 'gh auth login'") from exc
        except subprocess.TimeoutExpired as exc:
            raise NetworkError(f"{self._gh} {' '.join(args[:2])} timed out after {self._timeout:.0f}s") from exc
        if result.returncode != 0:
            raise _classify_gh_error(result.stderr)
        return result.stdout

    def create_issue(self, repo: str, title: str, body: str, labels: Sequence[str] = ()) -> IssueRef:
        args = ["issue", "create", "--repo", repo, "--title", title, "--body", body]
        for label in labels:
            args += ["--label", label]
        stdout = self.run_gh(args)
        url = ""
        for line in reversed(stdout.strip().splitlines()):
            if line.strip().startswith("http"):
                url = line.strip()
                break
        try:
            number = int(url.rstrip("/").rsplit("/", 1)[-1])
        except ValueError as exc:
            raise NetworkError(f"Unexpected gh issue create output: {stdout.strip()[:200]}") from exc
        logger.info("Created issue %s#%s", repo, number)
        return IssueRef(repo=repo, number=number, url=url)

    def list_issues(self, repo: str) -> list[IssueSummary]:
        raw = self.run_gh(["api", f"repos/{repo}/issues"])
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise NetworkError(f"Failed to parse gh output: {exc}") from exc
        issues: list[IssueSummary] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            number, title, url, state = item.get("number"), item.get("title"), item.get("html_url"), item.get("state")
            if not isinstance(number, int) or not all(isinstance(v, str) for v in (title, url, state)):
                continue
            labels = [
                str(label["name"])
                for label in item.get("labels") or []
                if isinstance(label, dict) and isinstance(label.get("name"), str)
            ]
            issues.append(IssueSummary(repo=repo, number=number, title=title, url=url, state=state, labels=labels))
        return issues

    def list_project_issues(self, projects_dir: Path) -> list[IssueSummary]:
        """List issues of every GitHub-backed repository directly under ``projects_dir``."""
        projects_dir = projects_dir.expanduser()
        if not projects_dir.is_dir():
            logger.warning("Projects directory does not exist: %s", projects_dir)
            return []
        all_issues: list[IssueSummary] = []
        for path in sorted(projects_dir.iterdir()):
            if not path.is_dir():
                continue
            try:
                repo = self.resolve_repo(path)
            except (VcsError, RepoNotFound):
                continue
            try:
                all_issues.extend(self.list_issues(repo))
            except IssueTrackerError as exc:
                logger.warning("Skipping issues for %s: %s", repo, exc)
        return all_issues

    # -- git ----------------------------------------------------------------

    def _git(self, repo_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self._git_binary, *args],
            cwd=str(repo_path),
            capture_output=True,
            text=True,
        )

    def ensure_repository(self, repo_path: Path) -> None:
        if not repo_path.is_dir():
            raise NotARepository(str(repo_path))
        result = self._git(repo_path, "rev-parse", "--is-inside-work-tree")
        if result.returncode != 0 or result.stdout.strip() != "true":
            raise NotARepository(str(repo_path))

    def resolve_repo(self, directory: Path) -> str:
        self.ensure_repository(directory)
        result = self._git(directory, "remote", "get-url", "origin")
        repo = parse_github_repo(result.stdout) if result.returncode == 0 else None
        if not repo:
            raise RepoNotFound(f"No GitHub 'origin' remote configured for {directory}")
        return repo

    def branch_exists(self, repo_path: Path, name: str) -> bool:
        result = self._git(repo_path, "show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        return result.returncode == 0

    def create_branch(self, repo_path: Path, name: str) -> None:
        self.ensure_repository(repo_path)
        if self.branch_exists(repo_path, name):
            raise BranchExists(name)
        result = self._git(repo_path, "branch", name)
        if result.returncode != 0:
            if self.branch_exists(repo_path, name):
                raise BranchExists(name)
            raise VcsError(f"git branch {name} failed: {result.stderr.strip()}")

    def delete_branch(self, repo_path: Path, name: str) -> bool:
        result = self._git(repo_path, "branch", "-D", name)
        if result.returncode != 0:
            logger.debug("git branch -D %s failed: %s", name, result.stderr.strip())
        return result.returncode == 0
