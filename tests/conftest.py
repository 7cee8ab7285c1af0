from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import pytest

from feature_swarm.errors import BranchExists, NotARepository
from feature_swarm.github.client import GhCliFacade, IssueRef, IssueSummary


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "config", "user.email", "tests@example.com")
    _git(repo, "config", "user.name", "Tests")
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "seed")
    return repo


class FakeFacade:
    """In-memory issue tracker; branch operations run against real git."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.issue_error: Optional[Exception] = None
        self.reject_branch: Callable[[str], bool] = lambda name: False
        self.issues: list[IssueSummary] = []
        self._git = GhCliFacade()
        self._next_issue = 41

    def resolve_repo(self, directory: Path) -> str:
        self.calls.append(("resolve_repo", directory))
        if not Path(directory).is_dir():
            raise NotARepository(str(directory))
        return "acme/widgets"

    def create_issue(self, repo: str, title: str, body: str, labels: Sequence[str] = ()) -> IssueRef:
        self.calls.append(("create_issue", (repo, title, body, tuple(labels))))
        if self.issue_error is not None:
            raise self.issue_error
        self._next_issue += 1
        return IssueRef(repo=repo, number=self._next_issue, url=f"https://github.com/{repo}/issues/{self._next_issue}")

    def list_issues(self, repo: str) -> list[IssueSummary]:
        self.calls.append(("list_issues", repo))
        return [issue for issue in self.issues if issue.repo == repo]

    def list_project_issues(self, projects_dir: Path) -> list[IssueSummary]:
        self.calls.append(("list_project_issues", projects_dir))
        return list(self.issues)

    def run_gh(self, args: Sequence[str], *, cwd: Optional[Path] = None) -> str:
        self.calls.append(("run_gh", list(args)))
        return "gh version 2.0.0\n"

    def create_branch(self, repo_path: Path, name: str) -> None:
        self.calls.append(("create_branch", name))
        if self.reject_branch(name):
            raise BranchExists(name)
        self._git.create_branch(repo_path, name)

    def delete_branch(self, repo_path: Path, name: str) -> bool:
        self.calls.append(("delete_branch", name))
        return self._git.delete_branch(repo_path, name)

    def branch_exists(self, repo_path: Path, name: str) -> bool:
        return self._git.branch_exists(repo_path, name)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def facade() -> FakeFacade:
    return FakeFacade()
