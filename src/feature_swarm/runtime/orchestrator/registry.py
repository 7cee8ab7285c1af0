"""Authoritative, thread-safe table of feature runs and their agent slots."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ...errors import InvalidTransition, UnknownRun, UnknownSlot
from ..domain.models import (
    RUN_STATUS_ORDER,
    TERMINAL_RUN_STATUSES,
    TERMINAL_SLOT_STATUSES,
    AgentHandle,
    AgentSlot,
    FeatureRequest,
    Run,
    RunStatus,
    SlotStatus,
    now_iso,
)
from ..storage.interfaces import RunRepository

logger = logging.getLogger(__name__)

_SLOT_RANK = {"pending": 0, "starting": 1, "running": 2, "succeeded": 3, "failed": 3, "cancelled": 3}


@dataclass
class RegistryUpdate:
    """Snapshot returned by every mutating registry call."""
    run: Run
    became_terminal: bool = False
    slot: Optional[AgentSlot] = None
    previous_status: Optional[SlotStatus] = None


def resolve_overall_status(slots: Iterable[AgentSlot]) -> Optional[RunStatus]:
    """Terminal run status for a set of slots, or ``None`` while any slot is live.

    Cancelled slots count as unsuccessful.
    """
    items = list(slots)
    if not items or any(slot.status not in TERMINAL_SLOT_STATUSES for slot in items):
        return None
    succeeded = sum(1 for slot in items if slot.status == "succeeded")
    if succeeded == len(items):
        return "completed"
    if succeeded == 0:
        return "failed"
    return "partially_failed"


class RunRegistry:
    """Single mutable store for runs; every slot mutation goes through here."""

    def __init__(self, repo: Optional[RunRepository] = None) -> None:
        self._repo = repo
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._next_slot_id = 1
        if repo is not None:
            for run in repo.list():
                self._runs[run.id] = run
                for slot in run.slots:
                    self._next_slot_id = max(self._next_slot_id, slot.slot_id + 1)

    # -- internals ----------------------------------------------------------

    def _get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise UnknownRun(run_id)
        return run

    def _persist(self, run: Run) -> None:
        run.updated_at = now_iso()
        if self._repo is not None:
            self._repo.upsert(copy.deepcopy(run))

    def _ensure_mutable(self, run: Run) -> None:
        if run.overall_status in TERMINAL_RUN_STATUSES:
            raise InvalidTransition(f"Run {run.id} is already {run.overall_status}")

    def _recompute(self, run: Run) -> bool:
        if run.overall_status != "running":
            return False
        resolved = resolve_overall_status(run.slots)
        if resolved is None:
            return False
        run.overall_status = resolved
        logger.info("Run %s finished with status %s", run.id, resolved)
        return True

    # -- runs ---------------------------------------------------------------

    def create_run(self, request: FeatureRequest) -> str:
        """Validate ``request`` and register a new run in ``initializing``.

        Raises:
            InvalidRequest: The request is unusable; nothing is stored.
        """
        request.validate()
        run = Run(request=request)
        with self._lock:
            self._runs[run.id] = run
            self._persist(run)
        return run.id

    def get_run(self, run_id: str) -> Run:
        """Return a detached snapshot of the run."""
        with self._lock:
            return copy.deepcopy(self._get(run_id))

    def list_runs(self) -> list[Run]:
        with self._lock:
            runs = [copy.deepcopy(run) for run in self._runs.values()]
        return sorted(runs, key=lambda run: run.created_at)

    def is_run_terminal(self, run_id: str) -> bool:
        """True when every slot is terminal, or the run failed before registering any."""
        with self._lock:
            run = self._get(run_id)
            if not run.slots:
                return run.overall_status in TERMINAL_RUN_STATUSES
            return all(slot.status in TERMINAL_SLOT_STATUSES for slot in run.slots)

    def advance(self, run_id: str, status: RunStatus) -> RegistryUpdate:
        """Move the run forward through its state machine.

        Entering ``running`` immediately resolves the run if every slot has
        already finished (for example when every launch failed).
        """
        with self._lock:
            run = self._get(run_id)
            self._ensure_mutable(run)
            if RUN_STATUS_ORDER.index(status) <= RUN_STATUS_ORDER.index(run.overall_status):
                raise InvalidTransition(f"Run {run_id} cannot move from {run.overall_status} to {status}")
            if status in TERMINAL_RUN_STATUSES:
                raise InvalidTransition("Terminal run statuses are derived from slots; use fail_run for early failures")
            run.overall_status = status
            became_terminal = self._recompute(run)
            self._persist(run)
            return RegistryUpdate(run=copy.deepcopy(run), became_terminal=became_terminal)

    def fail_run(self, run_id: str, error: str) -> RegistryUpdate:
        """Abort a run that has not reached ``running`` yet."""
        with self._lock:
            run = self._get(run_id)
            self._ensure_mutable(run)
            if run.overall_status == "running":
                raise InvalidTransition(f"Run {run_id} is running; its outcome comes from its slots")
            run.overall_status = "failed"
            run.error = error
            self._persist(run)
            return RegistryUpdate(run=copy.deepcopy(run), became_terminal=True)

    def set_issue(self, run_id: str, issue_ref: str, issue_url: Optional[str] = None) -> Run:
        with self._lock:
            run = self._get(run_id)
            self._ensure_mutable(run)
            run.issue_ref = issue_ref
            run.issue_url = issue_url
            self._persist(run)
            return copy.deepcopy(run)

    def request_cancel(self, run_id: str) -> Run:
        with self._lock:
            run = self._get(run_id)
            if run.overall_status not in TERMINAL_RUN_STATUSES:
                run.cancel_requested = True
                self._persist(run)
            return copy.deepcopy(run)

    def adopt_persisted_cancel(self, run_id: str) -> bool:
        """Pick up a cancel request another process wrote to the repository.

        Returns ``True`` only when the request is new to this registry.
        """
        with self._lock:
            run = self._get(run_id)
            if run.cancel_requested or self._repo is None or run.overall_status in TERMINAL_RUN_STATUSES:
                return False
            stored = self._repo.get(run_id)
            if stored is None or not stored.cancel_requested:
                return False
            run.cancel_requested = True
            return True

    # -- slots --------------------------------------------------------------

    def _check_new_slot(self, run: Run, slot: AgentSlot, taken: set[int]) -> None:
        if not 0 <= slot.agent_index < run.request.agent_count:
            raise InvalidTransition(
                f"Slot index {slot.agent_index} is outside 0..{run.request.agent_count - 1} for run {run.id}"
            )
        if slot.agent_index in taken:
            raise InvalidTransition(f"Run {run.id} already has slot {slot.agent_index}")
        if slot.status not in {"pending", "failed"}:
            raise InvalidTransition(f"New slots must be pending or failed, got {slot.status}")

    def register_slot(self, run_id: str, slot: AgentSlot) -> AgentSlot:
        """Add one slot to a run that is still spawning."""
        return self.register_slots(run_id, [slot], partial=True)[0]

    def register_slots(self, run_id: str, slots: list[AgentSlot], *, partial: bool = False) -> list[AgentSlot]:
        """Add slots as one atomic set; either all are stored or none are.

        Unless ``partial`` is set the set must cover exactly the run's agent count.
        """
        with self._lock:
            run = self._get(run_id)
            self._ensure_mutable(run)
            if run.overall_status != "spawning":
                raise InvalidTransition(f"Run {run_id} is {run.overall_status}; slots are registered while spawning")
            taken = {slot.agent_index for slot in run.slots}
            for slot in slots:
                self._check_new_slot(run, slot, taken)
                taken.add(slot.agent_index)
            if not partial and len(taken) != run.request.agent_count:
                raise InvalidTransition(
                    f"Run {run_id} needs {run.request.agent_count} slots, got {len(taken)}"
                )
            stored: list[AgentSlot] = []
            for slot in slots:
                item = copy.deepcopy(slot)
                if not item.slot_id:
                    item.slot_id = self._next_slot_id
                    self._next_slot_id += 1
                if item.status in TERMINAL_SLOT_STATUSES:
                    item.ended_at = item.ended_at or now_iso()
                run.slots.append(item)
                stored.append(copy.deepcopy(item))
            run.slots.sort(key=lambda s: s.agent_index)
            self._persist(run)
            return stored

    def update_slot_status(
        self,
        run_id: str,
        agent_index: int,
        status: SlotStatus,
        *,
        handle: Optional[AgentHandle] = None,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> RegistryUpdate:
        """Move one slot forward and recompute the run's overall status.

        Raises:
            UnknownRun: No such run.
            UnknownSlot: The run has no slot at ``agent_index``.
            InvalidTransition: The slot would move backwards or is already terminal.
        """
        with self._lock:
            run = self._get(run_id)
            slot = run.slot(agent_index)
            if slot is None:
                raise UnknownSlot(run_id, agent_index)
            if slot.status in TERMINAL_SLOT_STATUSES:
                raise InvalidTransition(f"Slot {agent_index} of run {run_id} is already {slot.status}")
            if _SLOT_RANK[status] < _SLOT_RANK[slot.status]:
                raise InvalidTransition(f"Slot {agent_index} of run {run_id} cannot move from {slot.status} to {status}")
            previous = slot.status
            slot.status = status
            if handle is not None:
                slot.handle = copy.deepcopy(handle)
            if status in {"starting", "running"} and not slot.started_at:
                slot.started_at = now_iso()
            if status in TERMINAL_SLOT_STATUSES:
                slot.ended_at = now_iso()
                slot.exit_code = exit_code
                slot.error = error
            became_terminal = self._recompute(run)
            self._persist(run)
            return RegistryUpdate(
                run=copy.deepcopy(run),
                became_terminal=became_terminal,
                slot=copy.deepcopy(slot),
                previous_status=previous,
            )

    # -- recovery -----------------------------------------------------------

    def recover_interrupted(self, skip: Optional[Callable[[Run], bool]] = None) -> list[str]:
        """Close out runs a previous process left unfinished.

        Live slots become ``failed`` because their processes are no longer
        supervised. Runs for which ``skip`` returns true are left alone.
        Returns the ids of the recovered runs.
        """
        recovered: list[str] = []
        with self._lock:
            for run in self._runs.values():
                if run.overall_status in TERMINAL_RUN_STATUSES:
                    continue
                if skip is not None and skip(run):
                    continue
                for slot in run.slots:
                    if slot.status not in TERMINAL_SLOT_STATUSES:
                        slot.status = "failed"
                        slot.ended_at = now_iso()
                        slot.error = "Interrupted by orchestrator restart"
                run.overall_status = resolve_overall_status(run.slots) or "failed"
                run.error = run.error or "Interrupted by orchestrator restart"
                self._persist(run)
                recovered.append(run.id)
        if recovered:
            logger.warning("Recovered %d interrupted run(s): %s", len(recovered), ", ".join(recovered))
        return recovered
