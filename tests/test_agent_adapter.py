from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Any

import pytest

from feature_swarm.errors import LaunchError
from feature_swarm.runtime.domain.models import AgentHandle
from feature_swarm.runtime.orchestrator.agent_adapter import (
    BackgroundAgentAdapter,
    ExitInfo,
    ScriptedAgentAdapter,
    TerminalAgentAdapter,
    _ProcessAgentAdapter,
    agent_index_from_branch,
    create_agent_adapter,
)
from feature_swarm.runtime.orchestrator.worktree_manager import WorktreeManager
from feature_swarm.workers.config import AgentRuntimeConfig


class _Outcome:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.finished = threading.Event()
        self.success: bool | None = None
        self.info: ExitInfo | None = None

    def on_started(self, handle: AgentHandle) -> None:
        self.started.set()

    def on_terminal(self, handle: AgentHandle, success: bool, info: ExitInfo) -> None:
        self.success = success
        self.info = info
        self.finished.set()


def _branch(repo: Path, name: str) -> str:
    subprocess.run(["git", "branch", name], cwd=repo, check=True, capture_output=True)
    return name


def _background(tmp_path: Path, command: str, **config: Any) -> tuple[BackgroundAgentAdapter, WorktreeManager]:
    worktrees = WorktreeManager(tmp_path / "worktrees")
    adapter = BackgroundAgentAdapter(
        AgentRuntimeConfig(command=command, **config),
        worktrees,
        tmp_path / "agent_logs",
    )
    return adapter, worktrees


def _watch(adapter: Any, handle: AgentHandle) -> _Outcome:
    outcome = _Outcome()
    adapter.on_started(handle, outcome.on_started)
    adapter.on_terminal(handle, outcome.on_terminal)
    return outcome


def test_background_agent_runs_in_worktree_and_reports_success(tmp_path: Path, git_repo: Path) -> None:
    adapter, worktrees = _background(tmp_path, "sh -c 'cat > prompt-copy.txt; git rev-parse --abbrev-ref HEAD'")
    branch = _branch(git_repo, "feature/run-bg/0")

    handle = adapter.start(work_dir=git_repo, branch=branch, description="Build the thing")
    outcome = _watch(adapter, handle)

    assert outcome.finished.wait(10)
    assert outcome.started.is_set()
    assert handle.pid is not None
    assert handle.terminal is False
    assert outcome.success is True
    assert outcome.info is not None and outcome.info.exit_code == 0
    assert Path(str(outcome.info.stdout_path)).read_text(encoding="utf-8").strip() == branch
    assert not worktrees.path_for(branch).exists()


def test_background_agent_non_zero_exit_is_a_failure(tmp_path: Path, git_repo: Path) -> None:
    adapter, _ = _background(tmp_path, "sh -c 'cat > /dev/null; echo broken >&2; exit 3'")
    branch = _branch(git_repo, "feature/run-bg/1")

    handle = adapter.start(work_dir=git_repo, branch=branch, description="x")
    outcome = _watch(adapter, handle)

    assert outcome.finished.wait(10)
    assert outcome.success is False
    assert outcome.info is not None
    assert outcome.info.exit_code == 3
    assert "code 3" in str(outcome.info.error)
    assert "broken" in Path(str(outcome.info.stderr_path)).read_text(encoding="utf-8")


def test_background_agent_cancel_terminates_process_group(tmp_path: Path, git_repo: Path) -> None:
    adapter, _ = _background(tmp_path, "sleep 30")
    branch = _branch(git_repo, "feature/run-bg/2")

    handle = adapter.start(work_dir=git_repo, branch=branch, description="x")
    outcome = _watch(adapter, handle)
    adapter.cancel(handle)

    assert outcome.finished.wait(10)
    assert outcome.success is False
    assert outcome.info is not None and outcome.info.cancelled


def test_keep_worktrees_leaves_checkout_in_place(tmp_path: Path, git_repo: Path) -> None:
    adapter, worktrees = _background(tmp_path, "true", keep_worktrees=True)
    branch = _branch(git_repo, "feature/run-bg/3")

    handle = adapter.start(work_dir=git_repo, branch=branch, description="x")
    outcome = _watch(adapter, handle)

    assert outcome.finished.wait(10)
    assert (worktrees.path_for(branch) / "README.md").exists()


def test_terminal_callback_registered_late_fires_once_immediately(tmp_path: Path, git_repo: Path) -> None:
    adapter, _ = _background(tmp_path, "true")
    branch = _branch(git_repo, "feature/run-bg/4")
    handle = adapter.start(work_dir=git_repo, branch=branch, description="x")
    first = _watch(adapter, handle)
    assert first.finished.wait(10)

    calls: list[bool] = []
    adapter.on_terminal(handle, lambda h, ok, info: calls.append(ok))

    assert calls == [True]


def test_launch_errors(tmp_path: Path, git_repo: Path) -> None:
    adapter, _ = _background(tmp_path, "true")

    with pytest.raises(LaunchError):
        adapter.start(work_dir=tmp_path / "missing", branch="feature/x/0", description="x")
    with pytest.raises(LaunchError):
        adapter.start(work_dir=git_repo, branch="feature/does-not-exist/0", description="x")

    missing_cli, _ = _background(tmp_path, "definitely-not-an-agent-cli --flag")
    with pytest.raises(LaunchError):
        missing_cli.start(work_dir=git_repo, branch=_branch(git_repo, "feature/run-bg/5"), description="x")


def test_unwritable_log_dir_is_a_launch_error_and_removes_the_worktree(tmp_path: Path, git_repo: Path) -> None:
    adapter, worktrees = _background(tmp_path, "true")
    (tmp_path / "agent_logs").write_text("not a directory", encoding="utf-8")
    branch = _branch(git_repo, "feature/run-bg/6")

    with pytest.raises(LaunchError):
        adapter.start(work_dir=git_repo, branch=branch, description="x")

    assert not worktrees.path_for(branch).exists()


def test_process_adapter_needs_a_launch_strategy(tmp_path: Path) -> None:
    with pytest.raises(TypeError):
        _ProcessAgentAdapter(AgentRuntimeConfig(command="true"), WorktreeManager(tmp_path / "worktrees"), tmp_path / "logs")  # type: ignore[abstract]


def test_terminal_adapter_handle_has_no_pid(tmp_path: Path, git_repo: Path) -> None:
    adapter = TerminalAgentAdapter(
        AgentRuntimeConfig(mode="terminal", command="true"),
        WorktreeManager(tmp_path / "worktrees"),
        tmp_path / "agent_logs",
    )
    branch = _branch(git_repo, "feature/run-term/0")

    handle = adapter.start(work_dir=git_repo, branch=branch, description="x")
    outcome = _watch(adapter, handle)

    assert handle.terminal is True
    assert handle.pid is None
    assert outcome.started.is_set()
    assert outcome.finished.wait(10)
    assert outcome.success is True


def test_scripted_adapter_hold_release_and_cancel(tmp_path: Path) -> None:
    adapter = ScriptedAgentAdapter(outcomes={0: "hold", 1: "hold"})
    first = adapter.start(work_dir=tmp_path, branch="feature/run-s/0", description="a")
    second = adapter.start(work_dir=tmp_path, branch="feature/run-s/1-2", description="b")
    first_outcome = _watch(adapter, first)
    second_outcome = _watch(adapter, second)

    assert first_outcome.started.is_set()
    assert not first_outcome.finished.is_set()
    adapter.release(first, success=False)
    adapter.cancel(second)

    assert first_outcome.success is False
    assert second_outcome.info is not None and second_outcome.info.cancelled
    assert adapter.started == ["feature/run-s/0", "feature/run-s/1-2"]
    assert adapter.prompts["feature/run-s/1-2"] == "b"


def test_agent_index_from_branch() -> None:
    assert agent_index_from_branch("feature/run-1/3") == 3
    assert agent_index_from_branch("feature/run-1/3-2") == 3
    assert agent_index_from_branch("main") is None


def test_factory_picks_adapter_by_mode(tmp_path: Path) -> None:
    worktrees = WorktreeManager(tmp_path / "worktrees")
    logs = tmp_path / "logs"
    assert isinstance(create_agent_adapter(AgentRuntimeConfig(mode="terminal"), worktrees, logs), TerminalAgentAdapter)
    assert isinstance(create_agent_adapter(AgentRuntimeConfig(mode="scripted"), worktrees, logs), ScriptedAgentAdapter)
    assert isinstance(create_agent_adapter(AgentRuntimeConfig(), worktrees, logs), BackgroundAgentAdapter)
