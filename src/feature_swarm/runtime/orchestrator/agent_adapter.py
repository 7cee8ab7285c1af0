"""Agent process adapters: one start/observe/cancel contract, several launch modes."""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Optional, Protocol

from ...errors import AdapterRuntimeError, LaunchError
from ...workers.config import AgentRuntimeConfig
from ..domain.models import AgentHandle
from .worktree_manager import WorktreeManager, worktree_key

logger = logging.getLogger(__name__)


@dataclass
class ExitInfo:
    """How an agent process ended."""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    cancelled: bool = False
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None


StartedCallback = Callable[[AgentHandle], None]
TerminalCallback = Callable[[AgentHandle, bool, ExitInfo], None]


class AgentAdapter(Protocol):
    """Contract the orchestrator uses to launch and supervise one agent."""

    def start(self, *, work_dir: Path, branch: str, description: str) -> AgentHandle:
        """Launch an agent on ``branch`` of the repository at ``work_dir``.

        Args:
            work_dir (Path): Repository the agent works on.
            branch (str): Existing branch the agent commits to.
            description (str): Full prompt handed to the agent.

        Returns:
            AgentHandle: Reference used with the callbacks and ``cancel``.

        Raises:
            LaunchError: Directory unreadable, branch not checkable out, or the
                process could not be created.
        """
        ...

    def on_started(self, handle: AgentHandle, callback: StartedCallback) -> None:
        """Call ``callback`` once the agent is confirmed alive (immediately if it already is)."""
        ...

    def on_terminal(self, handle: AgentHandle, callback: TerminalCallback) -> None:
        """Call ``callback(handle, success, exit_info)`` exactly once when the agent ends."""
        ...

    def cancel(self, handle: AgentHandle) -> None:
        """Ask the agent to stop. Best-effort; ``on_terminal`` still reports the end."""
        ...


def check_work_dir(work_dir: Path) -> None:
    if not work_dir.is_dir():
        raise LaunchError(f"Directory does not exist: {work_dir}")
    if not os.access(work_dir, os.R_OK | os.X_OK):
        raise LaunchError(f"Directory is not readable: {work_dir}")


def pid_alive(pid: Optional[int]) -> bool:
    """Whether a process with ``pid`` exists (owned by anyone)."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_process_group(pid: int) -> bool:
    """SIGTERM the process group led by ``pid``; returns whether a signal was sent."""
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    return True


class _LifecycleCallbacks:
    """Exactly-once started/terminal notification bookkeeping shared by adapters."""

    def __init__(self) -> None:
        self._cb_lock = threading.Lock()
        self._started: dict[str, AgentHandle] = {}
        self._finished: dict[str, tuple[bool, ExitInfo]] = {}
        self._started_cbs: dict[str, list[StartedCallback]] = {}
        self._terminal_cbs: dict[str, list[TerminalCallback]] = {}

    def on_started(self, handle: AgentHandle, callback: StartedCallback) -> None:
        with self._cb_lock:
            fired = handle.id in self._started
            if not fired:
                self._started_cbs.setdefault(handle.id, []).append(callback)
        if fired:
            self._invoke(callback, handle)

    def on_terminal(self, handle: AgentHandle, callback: TerminalCallback) -> None:
        with self._cb_lock:
            result = self._finished.get(handle.id)
            if result is None:
                self._terminal_cbs.setdefault(handle.id, []).append(callback)
        if result is not None:
            self._invoke(callback, handle, *result)

    def _fire_started(self, handle: AgentHandle) -> None:
        with self._cb_lock:
            if handle.id in self._started:
                return
            self._started[handle.id] = handle
            callbacks = self._started_cbs.pop(handle.id, [])
        for callback in callbacks:
            self._invoke(callback, handle)

    def _fire_terminal(self, handle: AgentHandle, success: bool, info: ExitInfo) -> None:
        with self._cb_lock:
            if handle.id in self._finished:
                return
            self._finished[handle.id] = (success, info)
            callbacks = self._terminal_cbs.pop(handle.id, [])
        for callback in callbacks:
            self._invoke(callback, handle, success, info)

    @staticmethod
    def _invoke(callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Agent lifecycle callback %r failed", callback)


@dataclass
class _LiveAgent:
    handle: AgentHandle
    proc: subprocess.Popen[bytes]
    repo_dir: Path
    workspace: Path
    stdout_path: Optional[Path]
    stderr_path: Optional[Path]
    files: list[IO[Any]] = field(default_factory=list)
    cancel_requested: bool = False


class _ProcessAgentAdapter(_LifecycleCallbacks, ABC):
    """Run the configured agent CLI as a subprocess inside a per-branch worktree."""

    terminal_attached = False

    def __init__(self, config: AgentRuntimeConfig, worktrees: WorktreeManager, logs_dir: Path) -> None:
        super().__init__()
        self._config = config
        self._worktrees = worktrees
        self._logs_dir = logs_dir
        self._lock = threading.Lock()
        self._live: dict[str, _LiveAgent] = {}

    @abstractmethod
    def _popen(self, argv: list[str], workspace: Path, stdin: IO[Any], stdout: Optional[IO[Any]], stderr: Optional[IO[Any]], env: dict[str, str]) -> subprocess.Popen[bytes]:
        raise NotImplementedError

    def start(self, *, work_dir: Path, branch: str, description: str) -> AgentHandle:
        check_work_dir(work_dir)
        argv = self._config.argv
        if not argv or shutil.which(argv[0]) is None:
            raise LaunchError(f"Agent command not found: {self._config.command!r}")
        workspace = self._worktrees.checkout(work_dir, branch)

        log_dir = self._logs_dir / worktree_key(branch)
        prompt_path = log_dir / "prompt.txt"
        stdout_path = None if self.terminal_attached else log_dir / "stdout.log"
        stderr_path = None if self.terminal_attached else log_dir / "stderr.log"

        files: list[IO[Any]] = []
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            prompt_path.write_text(description, encoding="utf-8")
            stdin = prompt_path.open("rb")
            files.append(stdin)
            stdout = stdout_path.open("wb") if stdout_path else None
            stderr = stderr_path.open("wb") if stderr_path else None
            files.extend(f for f in (stdout, stderr) if f is not None)
            env = dict(os.environ)
            env["FEATURE_SWARM_BRANCH"] = branch
            env["FEATURE_SWARM_REPO"] = str(work_dir)
            proc = self._popen(argv, workspace, stdin, stdout, stderr, env)
        except OSError as exc:
            for handle_file in files:
                handle_file.close()
            self._worktrees.remove(work_dir, workspace)
            raise LaunchError(f"Failed to start agent for {branch}: {exc}") from exc

        handle = AgentHandle(
            pid=None if self.terminal_attached else proc.pid,
            terminal=self.terminal_attached,
            worktree=str(workspace),
        )
        live = _LiveAgent(
            handle=handle,
            proc=proc,
            repo_dir=work_dir,
            workspace=workspace,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            files=files,
        )
        with self._lock:
            self._live[handle.id] = live
        logger.info("Agent %s started on %s (pid %s)", handle.id, branch, proc.pid)
        self._fire_started(handle)
        threading.Thread(target=self._watch, args=(live,), daemon=True, name=f"agent-{handle.id}").start()
        return handle

    def _watch(self, live: _LiveAgent) -> None:
        exit_code = live.proc.wait()
        for handle_file in live.files:
            handle_file.close()
        if not self._config.keep_worktrees:
            self._worktrees.remove(live.repo_dir, live.workspace)
        with self._lock:
            self._live.pop(live.handle.id, None)
        success = exit_code == 0 and not live.cancel_requested
        error = None
        if live.cancel_requested:
            error = "Cancelled"
        elif not success:
            error = str(AdapterRuntimeError(f"Agent exited with code {exit_code}", exit_code=exit_code))
        info = ExitInfo(
            exit_code=exit_code,
            error=error,
            cancelled=live.cancel_requested,
            stdout_path=str(live.stdout_path) if live.stdout_path else None,
            stderr_path=str(live.stderr_path) if live.stderr_path else None,
        )
        logger.info("Agent %s exited with code %s", live.handle.id, exit_code)
        self._fire_terminal(live.handle, success, info)

    def _signal(self, live: _LiveAgent) -> None:
        live.proc.terminate()

    def cancel(self, handle: AgentHandle) -> None:
        with self._lock:
            live = self._live.get(handle.id)
        if live is None:
            return
        live.cancel_requested = True
        try:
            self._signal(live)
        except ProcessLookupError:
            pass
        except OSError:
            logger.warning("Failed to signal agent %s", handle.id, exc_info=True)


class BackgroundAgentAdapter(_ProcessAgentAdapter):
    """Detached agents in their own process group, output captured to log files."""

    def _popen(self, argv: list[str], workspace: Path, stdin: IO[Any], stdout: Optional[IO[Any]], stderr: Optional[IO[Any]], env: dict[str, str]) -> subprocess.Popen[bytes]:
        return subprocess.Popen(
            argv,
            cwd=str(workspace),
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=env,
            start_new_session=True,
            close_fds=True,
        )

    def _signal(self, live: _LiveAgent) -> None:
        terminate_process_group(live.proc.pid)


class TerminalAgentAdapter(_ProcessAgentAdapter):
    """Agents attached to the caller's console; handles carry ``terminal=True`` and no pid."""

    terminal_attached = True

    def _popen(self, argv: list[str], workspace: Path, stdin: IO[Any], stdout: Optional[IO[Any]], stderr: Optional[IO[Any]], env: dict[str, str]) -> subprocess.Popen[bytes]:
        return subprocess.Popen(argv, cwd=str(workspace), stdin=stdin, env=env)


_INDEX_SUFFIX = re.compile(r"/(\d+)(?:-\d+)?$")


def agent_index_from_branch(branch: str) -> Optional[int]:
    """Recover the agent index from a ``prefix/run/index[-n]`` branch name."""
    match = _INDEX_SUFFIX.search(branch)
    return int(match.group(1)) if match else None


class ScriptedAgentAdapter(_LifecycleCallbacks):
    """Deterministic adapter used in tests and dry runs.

    Outcomes are scripted per agent index: ``"succeed"`` (default),
    ``"fail"`` (exits non-zero), ``"launch_error"`` (``start`` raises), or
    ``"hold"`` (stays running until ``release`` or ``cancel``). With
    ``auto_complete`` disabled every agent holds.
    """

    def __init__(
        self,
        outcomes: Optional[dict[int, str]] = None,
        *,
        auto_complete: bool = True,
        launch_delays: Optional[dict[int, float]] = None,
    ) -> None:
        super().__init__()
        self._outcomes = dict(outcomes or {})
        self._auto_complete = auto_complete
        self._launch_delays = dict(launch_delays or {})
        self._lock = threading.Lock()
        self._held: dict[str, AgentHandle] = {}
        self.prompts: dict[str, str] = {}
        self.started: list[str] = []
        self.cancelled: list[str] = []

    def _outcome(self, branch: str) -> str:
        index = agent_index_from_branch(branch)
        outcome = self._outcomes.get(index, "succeed") if index is not None else "succeed"
        if not self._auto_complete and outcome in {"succeed", "fail"}:
            return "hold"
        return outcome

    def start(self, *, work_dir: Path, branch: str, description: str) -> AgentHandle:
        check_work_dir(work_dir)
        index = agent_index_from_branch(branch)
        delay = self._launch_delays.get(index, 0.0) if index is not None else 0.0
        if delay:
            time.sleep(delay)
        outcome = self._outcome(branch)
        if outcome == "launch_error":
            raise LaunchError(f"Scripted launch failure for {branch}")
        handle = AgentHandle(pid=None, terminal=False, worktree=str(work_dir))
        with self._lock:
            self.prompts[branch] = description
            self.started.append(branch)
            if outcome == "hold":
                self._held[handle.id] = handle
        self._fire_started(handle)
        if outcome in {"succeed", "fail"}:
            success = outcome == "succeed"
            info = ExitInfo(exit_code=0 if success else 1, error=None if success else "Scripted agent failure")
            threading.Thread(
                target=self._fire_terminal, args=(handle, success, info), daemon=True, name=f"scripted-{handle.id}"
            ).start()
        return handle

    def release(self, handle: AgentHandle, *, success: bool = True) -> None:
        """Finish a held agent."""
        with self._lock:
            held = self._held.pop(handle.id, None)
        if held is None:
            return
        info = ExitInfo(exit_code=0 if success else 1, error=None if success else "Scripted agent failure")
        self._fire_terminal(held, success, info)

    def release_all(self, *, success: bool = True) -> None:
        with self._lock:
            handles = list(self._held.values())
        for handle in handles:
            self.release(handle, success=success)

    def cancel(self, handle: AgentHandle) -> None:
        with self._lock:
            held = self._held.pop(handle.id, None)
            self.cancelled.append(handle.id)
        if held is not None:
            self._fire_terminal(held, False, ExitInfo(exit_code=None, error="Cancelled", cancelled=True))


def create_agent_adapter(config: AgentRuntimeConfig, worktrees: WorktreeManager, logs_dir: Path) -> AgentAdapter:
    """Build the adapter selected by ``config.mode``."""
    if config.mode == "terminal":
        return TerminalAgentAdapter(config, worktrees, logs_dir)
    if config.mode == "scripted":
        return ScriptedAgentAdapter()
    return BackgroundAgentAdapter(config, worktrees, logs_dir)
