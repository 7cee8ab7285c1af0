from __future__ import annotations

import re
import subprocess
import threading
from pathlib import Path

import pytest

from feature_swarm.errors import AllocationExhausted, NotARepository, VcsError
from feature_swarm.github.client import GhCliFacade
from feature_swarm.runtime.orchestrator.branch_allocator import AllocatedNames, BranchAllocator


def _branches(repo: Path) -> set[str]:
    out = subprocess.run(
        ["git", "for-each-ref", "--format=%(refname:short)", "refs/heads/"],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    ).stdout
    return {line.strip() for line in out.splitlines() if line.strip()}


def test_allocates_distinct_branches_per_agent(git_repo: Path) -> None:
    allocator = BranchAllocator(GhCliFacade(), names=AllocatedNames())

    names = [allocator.allocate("run-abc", index, git_repo) for index in range(3)]

    assert len(set(names)) == 3
    assert all(re.fullmatch(r"feature/run-abc/[0-2]", name) for name in names)
    assert set(names) <= _branches(git_repo)


def test_existing_branch_gets_a_suffix(git_repo: Path) -> None:
    subprocess.run(["git", "branch", "feature/run-abc/0"], cwd=git_repo, check=True)
    allocator = BranchAllocator(GhCliFacade(), names=AllocatedNames())

    assert allocator.allocate("run-abc", 0, git_repo) == "feature/run-abc/0-2"


def test_in_process_collision_never_returns_a_duplicate(git_repo: Path) -> None:
    names = AllocatedNames()
    first = BranchAllocator(GhCliFacade(), names=names)
    second = BranchAllocator(GhCliFacade(), names=names)

    a = first.allocate("run-same", 0, git_repo)
    b = second.allocate("run-same", 0, git_repo)

    assert a == "feature/run-same/0"
    assert b == "feature/run-same/0-2"


def test_concurrent_allocations_are_unique(git_repo: Path) -> None:
    allocator = BranchAllocator(GhCliFacade(), names=AllocatedNames())
    results: list[str] = []
    lock = threading.Lock()

    def _allocate() -> None:
        name = allocator.allocate("run-race", 0, git_repo)
        with lock:
            results.append(name)

    threads = [threading.Thread(target=_allocate) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ["feature/run-race/0", "feature/run-race/0-2", "feature/run-race/0-3"]


def test_allocation_exhausts_after_retry_bound(git_repo: Path) -> None:
    for name in ("feature/run-full/1", "feature/run-full/1-2"):
        subprocess.run(["git", "branch", name], cwd=git_repo, check=True)
    allocator = BranchAllocator(GhCliFacade(), max_attempts=2, names=AllocatedNames())

    with pytest.raises(AllocationExhausted) as excinfo:
        allocator.allocate("run-full", 1, git_repo)
    assert excinfo.value.attempts == 2


def test_not_a_repository_is_a_vcs_error(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    names = AllocatedNames()
    allocator = BranchAllocator(GhCliFacade(), names=names)

    with pytest.raises(NotARepository):
        allocator.allocate("run-x", 0, plain)
    assert issubclass(NotARepository, VcsError)
    assert "feature/run-x/0" not in names


def test_release_branch_deletes_but_keeps_name_reserved(git_repo: Path) -> None:
    names = AllocatedNames()
    allocator = BranchAllocator(GhCliFacade(), names=names)
    name = allocator.allocate("run-rel", 0, git_repo)

    allocator.release_branch(git_repo, name)

    assert name not in _branches(git_repo)
    assert name in names
    assert allocator.allocate("run-rel", 0, git_repo) == "feature/run-rel/0-2"


def test_custom_prefix(git_repo: Path) -> None:
    allocator = BranchAllocator(GhCliFacade(), prefix="swarm/", names=AllocatedNames())
    assert allocator.allocate("run-p", 4, git_repo) == "swarm/run-p/4"
