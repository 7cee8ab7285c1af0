"""Feature orchestration: issue, branches, concurrent agent launches, lifecycle events."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from ... import prompts
from ...errors import (
    AllocationExhausted,
    InvalidTransition,
    IssueCreationError,
    IssueTrackerError,
    LaunchError,
    SpawnError,
    VcsError,
)
from ...github.client import GhCliFacade, IssueVcsFacade
from ...workers.config import AgentRuntimeConfig, get_agent_runtime_config
from ..domain.models import (
    AgentCompleted,
    AgentHandle,
    AgentSlot,
    AgentStarted,
    FeatureRequest,
    LifecycleEvent,
    Run,
    RunTerminal,
    SlotStatus,
    StatusUpdate,
)
from ..events.bus import EventBus
from ..storage.container import Container
from .agent_adapter import AgentAdapter, ExitInfo, create_agent_adapter, pid_alive
from .branch_allocator import BranchAllocator
from .registry import RunRegistry
from .worktree_manager import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass
class FeatureExecution:
    """What ``execute_feature`` hands back once every launch was acknowledged."""
    run_id: str
    branch_names: list[Optional[str]] = field(default_factory=list)
    agent_handles: list[Optional[AgentHandle]] = field(default_factory=list)
    slot_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "branch_names": list(self.branch_names),
            "agent_handles": [handle.to_dict() if handle else None for handle in self.agent_handles],
            "slot_ids": list(self.slot_ids),
        }


def _launched_handle(future: Optional[Future[Optional[AgentHandle]]]) -> Optional[AgentHandle]:
    if future is None or not future.done() or future.cancelled() or future.exception() is not None:
        return None
    return future.result()


class _RunEventSequencer:
    """Publish one run's slot events in agent-index order.

    Launches finish in any order, but ``agent-started`` events leave here
    sorted by agent index. A slot whose launch never produced a process
    resolves its position without a Started event. A slot's Completed event
    is held until its Started event went out, and run-level events queued
    with ``run_level`` wait until every slot position is resolved. The
    run-terminal event also waits for every slot's Completed event.
    ``on_finished`` runs once the run-terminal event is out.
    """

    def __init__(
        self,
        bus: EventBus,
        run_id: str,
        slot_count: int,
        on_finished: Optional[Callable[[], None]] = None,
    ) -> None:
        self._bus = bus
        self._on_finished = on_finished
        self._run_id = run_id
        self._slot_count = slot_count
        self._lock = threading.Lock()
        self._cursor = 0
        self._resolved: dict[int, Optional[AgentStarted]] = {}
        self._released: set[int] = set()
        self._held_completed: dict[int, AgentCompleted] = {}
        self._completed: set[int] = set()
        self._trailer: list[LifecycleEvent] = []

    def started(self, event: AgentStarted) -> None:
        with self._lock:
            self._resolved.setdefault(event.agent_index, event)
            self._flush()

    def skipped(self, agent_index: int, completed: Optional[AgentCompleted] = None) -> None:
        """Resolve a position that gets no Started event, optionally with its Completed event."""
        with self._lock:
            self._resolved.setdefault(agent_index, None)
            if completed is not None:
                self._completed.add(agent_index)
                if agent_index in self._released:
                    self._bus.publish(self._run_id, completed)
                else:
                    self._held_completed[agent_index] = completed
            self._flush()

    def completed(self, event: AgentCompleted) -> None:
        with self._lock:
            self._completed.add(event.agent_index)
            if event.agent_index in self._released:
                self._bus.publish(self._run_id, event)
            else:
                self._held_completed[event.agent_index] = event
            self._flush()

    def run_level(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._trailer.append(event)
            self._flush()

    def _flush(self) -> None:
        while self._cursor < self._slot_count and self._cursor in self._resolved:
            index = self._cursor
            started = self._resolved[index]
            if started is not None:
                self._bus.publish(self._run_id, started)
            self._released.add(index)
            held = self._held_completed.pop(index, None)
            if held is not None:
                self._bus.publish(self._run_id, held)
            self._cursor += 1
        if self._cursor < self._slot_count:
            return
        while self._trailer:
            if isinstance(self._trailer[0], RunTerminal) and len(self._completed) < self._slot_count:
                return
            self._emit(self._trailer.pop(0))

    def _emit(self, event: LifecycleEvent) -> None:
        self._bus.publish(self._run_id, event)
        if isinstance(event, RunTerminal) and self._on_finished is not None:
            self._on_finished()


class FeatureOrchestrator:
    """Turn one feature request into a tracking issue and N concurrently running agents."""

    def __init__(
        self,
        registry: RunRegistry,
        bus: EventBus,
        facade: IssueVcsFacade,
        adapter: AgentAdapter,
        *,
        config: Optional[AgentRuntimeConfig] = None,
        allocator: Optional[BranchAllocator] = None,
    ) -> None:
        """Initialize the FeatureOrchestrator.

        Args:
            registry (RunRegistry): Single source of truth for run and slot state.
            bus (EventBus): Destination of every lifecycle event.
            facade (IssueVcsFacade): Issue tracker and branch creation collaborator.
            adapter (AgentAdapter): Launches and supervises agent processes.
            config (Optional[AgentRuntimeConfig]): Launch settings; defaults apply when omitted.
            allocator (Optional[BranchAllocator]): Branch allocator; built from ``config`` when omitted.
        """
        self.registry = registry
        self.bus = bus
        self.facade = facade
        self.adapter = adapter
        self.config = config or AgentRuntimeConfig()
        self.allocator = allocator or BranchAllocator(
            facade,
            prefix=self.config.branch_prefix,
            max_attempts=self.config.branch_max_attempts,
        )
        self._lock = threading.RLock()
        self._pool: ThreadPoolExecutor | None = None
        self._sequencers: dict[str, _RunEventSequencer] = {}
        self._handles: dict[tuple[str, int], AgentHandle] = {}
        self._closed = False

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.launch_concurrency,
                    thread_name_prefix="feature-launch",
                )
            return self._pool

    def _status(self, run_id: str, phase: str, message: str) -> None:
        self.bus.publish(run_id, StatusUpdate(run_id=run_id, phase=phase, message=message))

    # -- execute ------------------------------------------------------------

    def execute_feature(self, request: FeatureRequest) -> FeatureExecution:
        """Create the tracking issue, allocate branches, and launch every agent.

        Returns once each launch has been acknowledged (started or failed);
        agent completion is observed through the event bus.

        Args:
            request (FeatureRequest): Directory, description, and agent count.

        Returns:
            FeatureExecution: Run id plus per-slot branch names, handles, and slot ids.

        Raises:
            InvalidRequest: The request failed validation; nothing was recorded.
            IssueCreationError: The tracking issue could not be created; no agent was launched.
            SpawnError: Slots could not be set up; created branches were deleted.
        """
        if self._closed:
            raise RuntimeError("Orchestrator is shut down")
        run_id = self.registry.create_run(request)
        repo_path = Path(request.directory).expanduser()
        logger.info("Run %s: %d agent(s) for %s", run_id, request.agent_count, repo_path)

        self.registry.advance(run_id, "creating_issue")
        self._status(run_id, "creating_issue", "Creating tracking issue")
        try:
            repo = self.facade.resolve_repo(repo_path)
            issue = self.facade.create_issue(
                repo,
                request.title,
                self._issue_body(run_id, request),
                labels=self.config.issue_labels,
            )
        except (IssueTrackerError, VcsError) as exc:
            message = self._abort_run(run_id, "issue_failed", f"Issue creation failed: {exc}")
            raise IssueCreationError(message) from exc
        except Exception as exc:
            logger.exception("Run %s: unexpected error while creating the issue", run_id)
            message = self._abort_run(run_id, "issue_failed", f"Issue creation failed: {exc}")
            raise IssueCreationError(message) from exc
        self.registry.set_issue(run_id, str(issue), issue.url)
        self._status(run_id, "issue_created", f"Created issue {issue}: {issue.url}")

        self.registry.advance(run_id, "spawning")
        self._status(run_id, "spawning", f"Spawning {request.agent_count} agent(s)")

        slots: list[AgentSlot] = []
        try:
            for index in range(request.agent_count):
                slots.append(self._allocate_slot(run_id, index, repo_path))
            registered = self.registry.register_slots(run_id, slots)
        except Exception as exc:
            logger.exception("Run %s: unexpected error while setting up slots", run_id)
            for slot in slots:
                if slot.branch_name:
                    self._release_quietly(repo_path, slot.branch_name)
            message = self._abort_run(run_id, "spawn_failed", f"Spawning failed: {exc}")
            raise SpawnError(message) from exc

        sequencer = _RunEventSequencer(
            self.bus,
            run_id,
            request.agent_count,
            on_finished=lambda: self._forget_run(run_id),
        )
        with self._lock:
            self._sequencers[run_id] = sequencer

        launches: dict[int, Future[Optional[AgentHandle]]] = {}
        pool = self._get_pool()
        for slot in registered:
            if slot.status == "failed":
                sequencer.skipped(
                    slot.agent_index, self._completed_event(run_id, slot, False, "failed", None, slot.error)
                )
                continue
            launches[slot.agent_index] = pool.submit(self._launch, run_id, slot, repo_path, str(issue), issue.url)

        if launches:
            _, pending = wait(launches.values(), timeout=self.config.launch_timeout_seconds)
            if pending:
                logger.warning(
                    "Run %s: %d launch(es) not acknowledged within %ss",
                    run_id,
                    len(pending),
                    self.config.launch_timeout_seconds,
                )

        sequencer.run_level(StatusUpdate(run_id=run_id, phase="running", message="All launches issued"))
        update = self.registry.advance(run_id, "running")
        if update.became_terminal:
            sequencer.run_level(self._terminal_event(update.run))

        return FeatureExecution(
            run_id=run_id,
            branch_names=[slot.branch_name for slot in registered],
            agent_handles=[_launched_handle(launches.get(slot.agent_index)) for slot in registered],
            slot_ids=[slot.slot_id for slot in registered],
        )

    def _abort_run(self, run_id: str, phase: str, message: str) -> str:
        """Fail a run that never reached ``running`` and close its event stream."""
        logger.warning("Run %s: %s", run_id, message)
        update = self.registry.fail_run(run_id, message)
        self._status(run_id, phase, message)
        self.bus.publish(run_id, self._terminal_event(update.run))
        return message

    def _release_quietly(self, repo_path: Path, branch: str) -> None:
        try:
            self.allocator.release_branch(repo_path, branch)
        except Exception:
            logger.exception("Could not delete branch %s in %s", branch, repo_path)

    def _sequencer(self, run_id: str) -> Optional[_RunEventSequencer]:
        with self._lock:
            return self._sequencers.get(run_id)

    def _forget_run(self, run_id: str) -> None:
        with self._lock:
            self._sequencers.pop(run_id, None)
            for key in [key for key in self._handles if key[0] == run_id]:
                del self._handles[key]

    def _cancel_requested(self, run_id: str) -> bool:
        """Whether the run is being cancelled, including by another process."""
        if self.registry.adopt_persisted_cancel(run_id):
            logger.info("Run %s: cancellation requested by another process", run_id)
            self.cancel_run(run_id)
        return self.registry.get_run(run_id).cancel_requested

    @staticmethod
    def _issue_body(run_id: str, request: FeatureRequest) -> str:
        return (
            f"{request.description.strip()}\n\n"
            f"---\n"
            f"Run `{run_id}` is building this with {request.agent_count} independent agent(s), "
            f"each on its own branch. Every agent opens a pull request that references this issue."
        )

    def _allocate_slot(self, run_id: str, agent_index: int, repo_path: Path) -> AgentSlot:
        try:
            branch = self.allocator.allocate(run_id, agent_index, repo_path)
        except (AllocationExhausted, VcsError) as exc:
            logger.warning("Run %s slot %d: branch allocation failed: %s", run_id, agent_index, exc)
            return AgentSlot(agent_index=agent_index, status="failed", error=str(exc))
        return AgentSlot(agent_index=agent_index, branch_name=branch)

    def _prompt(self, run: Run, slot: AgentSlot, issue_ref: str, issue_url: Optional[str]) -> str:
        return prompts.render(
            "agent.md",
            agent_number=slot.agent_index + 1,
            agent_count=run.request.agent_count,
            issue_ref=issue_ref,
            issue_url=issue_url or "",
            description=run.request.description.strip(),
            branch=slot.branch_name,
        )

    def _launch(
        self,
        run_id: str,
        slot: AgentSlot,
        repo_path: Path,
        issue_ref: str,
        issue_url: Optional[str],
    ) -> Optional[AgentHandle]:
        index = slot.agent_index
        branch = str(slot.branch_name)
        if self._cancel_requested(run_id):
            self._cancel_pending(run_id, index, repo_path, branch)
            return None
        try:
            self.registry.update_slot_status(run_id, index, "starting")
        except InvalidTransition:
            # Cancelled while the launch was queued.
            sequencer = self._sequencer(run_id)
            if sequencer is not None:
                sequencer.skipped(index)
            self.allocator.release_branch(repo_path, branch)
            return None

        run = self.registry.get_run(run_id)
        try:
            handle = self.adapter.start(
                work_dir=repo_path,
                branch=branch,
                description=self._prompt(run, slot, issue_ref, issue_url),
            )
        except LaunchError as exc:
            logger.warning("Run %s slot %d: launch failed: %s", run_id, index, exc)
            self.allocator.release_branch(repo_path, branch)
            self._finish_slot(run_id, slot, "failed", exit_code=None, error=str(exc))
            return None
        except Exception as exc:
            logger.exception("Run %s slot %d: unexpected launch failure", run_id, index)
            self.allocator.release_branch(repo_path, branch)
            self._finish_slot(run_id, slot, "failed", exit_code=None, error=f"Launch failed: {exc}")
            return None

        with self._lock:
            self._handles[(run_id, index)] = handle
        self.adapter.on_started(handle, lambda h: self._on_started(run_id, slot, h))
        self.adapter.on_terminal(handle, lambda h, ok, info: self._on_terminal(run_id, slot, h, ok, info))
        if self._cancel_requested(run_id):
            self.adapter.cancel(handle)
        return handle

    def _on_started(self, run_id: str, slot: AgentSlot, handle: AgentHandle) -> None:
        try:
            self.registry.update_slot_status(run_id, slot.agent_index, "running", handle=handle)
        except InvalidTransition:
            logger.debug("Run %s slot %d finished before its start was recorded", run_id, slot.agent_index)
            return
        sequencer = self._sequencer(run_id)
        if sequencer is None:
            return
        sequencer.started(
            AgentStarted(
                run_id=run_id,
                agent_index=slot.agent_index,
                branch_name=str(slot.branch_name),
                slot_id=slot.slot_id,
                pid=handle.pid,
                terminal=handle.terminal,
            )
        )

    def _on_terminal(self, run_id: str, slot: AgentSlot, handle: AgentHandle, success: bool, info: ExitInfo) -> None:
        status: SlotStatus
        error = info.error
        if success:
            status = "succeeded"
        elif info.cancelled or self._cancel_requested(run_id):
            status = "cancelled"
            error = "Cancelled"
        else:
            status = "failed"
        self._finish_slot(run_id, slot, status, exit_code=info.exit_code, error=error)

    def _finish_slot(
        self,
        run_id: str,
        slot: AgentSlot,
        status: SlotStatus,
        *,
        exit_code: Optional[int],
        error: Optional[str],
    ) -> None:
        try:
            update = self.registry.update_slot_status(
                run_id, slot.agent_index, status, exit_code=exit_code, error=error
            )
        except InvalidTransition:
            logger.debug("Run %s slot %d already terminal; ignoring %s", run_id, slot.agent_index, status)
            return
        sequencer = self._sequencer(run_id)
        if sequencer is None:
            return
        logger.info("Run %s slot %d %s", run_id, slot.agent_index, status)
        completed = self._completed_event(run_id, slot, status == "succeeded", status, exit_code, error)
        if update.previous_status != "running":
            # No Started event will follow for this slot.
            sequencer.skipped(slot.agent_index, completed)
        else:
            sequencer.completed(completed)
        if update.became_terminal:
            sequencer.run_level(self._terminal_event(update.run))

    def _cancel_pending(self, run_id: str, agent_index: int, repo_path: Path, branch: Optional[str]) -> None:
        try:
            update = self.registry.update_slot_status(run_id, agent_index, "cancelled", error="Cancelled before launch")
        except InvalidTransition:
            return
        slot = update.slot
        sequencer = self._sequencer(run_id)
        if slot is None or sequencer is None:
            return
        if branch:
            self.allocator.release_branch(repo_path, branch)
        sequencer.skipped(agent_index, self._completed_event(run_id, slot, False, "cancelled", None, slot.error))
        if update.became_terminal:
            sequencer.run_level(self._terminal_event(update.run))

    @staticmethod
    def _completed_event(
        run_id: str,
        slot: AgentSlot,
        success: bool,
        status: str,
        exit_code: Optional[int],
        error: Optional[str],
    ) -> AgentCompleted:
        return AgentCompleted(
            run_id=run_id,
            agent_index=slot.agent_index,
            slot_id=slot.slot_id,
            success=success,
            status=status,
            exit_code=exit_code,
            error=error,
        )

    @staticmethod
    def _terminal_event(run: Run) -> RunTerminal:
        return RunTerminal(
            run_id=run.id,
            status=run.overall_status,
            succeeded=sum(1 for slot in run.slots if slot.status == "succeeded"),
            failed=sum(1 for slot in run.slots if slot.status == "failed"),
            cancelled=sum(1 for slot in run.slots if slot.status == "cancelled"),
        )

    # -- observe / cancel ---------------------------------------------------

    def get_run(self, run_id: str) -> Run:
        return self.registry.get_run(run_id)

    def list_runs(self) -> list[Run]:
        return self.registry.list_runs()

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Block until the run's ``run-terminal`` event went out or ``timeout`` elapses.

        Runs this orchestrator never sequenced (for example ones recovered from
        disk) are done as soon as the registry says they are terminal.
        Returns the latest snapshot either way.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.bus.subscribe(run_id, channels=[RunTerminal.channel], replay=True) as subscription:
            while True:
                run = self.registry.get_run(run_id)
                with self._lock:
                    sequenced = run_id in self._sequencers
                if run.is_terminal and not sequenced:
                    return run
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return run
                if subscription.get(timeout=min(remaining, 0.5) if remaining is not None else 0.5) is not None:
                    return self.registry.get_run(run_id)

    def cancel_run(self, run_id: str) -> Run:
        """Request cancellation of every non-terminal slot.

        Pending slots become ``cancelled`` at once; live agents are signalled and
        report ``cancelled`` through their terminal callback.

        Raises:
            UnknownRun: No such run.
        """
        run = self.registry.request_cancel(run_id)
        if run.is_terminal:
            return run
        logger.info("Run %s: cancellation requested", run_id)
        repo_path = Path(run.request.directory).expanduser()
        with self._lock:
            has_sequencer = run_id in self._sequencers
        for slot in run.slots:
            if slot.is_terminal:
                continue
            if slot.status == "pending":
                if has_sequencer:
                    self._cancel_pending(run_id, slot.agent_index, repo_path, slot.branch_name)
                continue
            with self._lock:
                handle = self._handles.get((run_id, slot.agent_index))
            if handle is not None:
                self.adapter.cancel(handle)
        return self.registry.get_run(run_id)

    def shutdown(self, *, timeout: float = 10.0) -> None:
        """Cancel every live run, wait up to ``timeout`` for agents to stop, and close the pool."""
        with self._lock:
            self._closed = True
            pool = self._pool
            self._pool = None
        live = [run for run in self.registry.list_runs() if not run.is_terminal]
        for run in live:
            self.cancel_run(run.id)
        deadline = time.monotonic() + max(timeout, 0.0)
        for run in live:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.wait_for_run(run.id, timeout=remaining)
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)


def create_orchestrator(
    container: Container,
    bus: EventBus,
    *,
    facade: IssueVcsFacade | None = None,
    adapter: AgentAdapter | None = None,
    cli_mode: Optional[str] = None,
    cli_command: Optional[str] = None,
    recover: bool = True,
) -> FeatureOrchestrator:
    """Build an orchestrator wired to a container's state directory.

    With ``recover`` set, runs left unfinished by a previous process are
    closed out as failed and their leftover worktrees removed. Runs with an
    agent process that is still alive belong to another live orchestrator and
    are skipped.
    """
    config = get_agent_runtime_config(
        config=container.config.load(),
        cli_mode=cli_mode,
        cli_command=cli_command,
    )
    registry = RunRegistry(container.runs)
    worktrees = WorktreeManager(container.worktrees_dir)
    if recover:
        recovered = registry.recover_interrupted(
            skip=lambda run: any(slot.handle is not None and pid_alive(slot.handle.pid) for slot in run.slots)
        )
        for run_id in recovered:
            directory = Path(registry.get_run(run_id).request.directory).expanduser()
            if directory.is_dir():
                worktrees.cleanup_orphaned(directory)
    return FeatureOrchestrator(
        registry,
        bus,
        facade or GhCliFacade(),
        adapter or create_agent_adapter(config, worktrees, container.agent_logs_dir),
        config=config,
    )
