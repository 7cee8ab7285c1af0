"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Optional, Union, cast

from ...errors import InvalidRequest


RunStatus = Literal[
    "initializing",
    "creating_issue",
    "spawning",
    "running",
    "completed",
    "partially_failed",
    "failed",
]

SlotStatus = Literal[
    "pending",
    "starting",
    "running",
    "succeeded",
    "failed",
    "cancelled",
]

MIN_AGENT_COUNT = 1
MAX_AGENT_COUNT = 5

RUN_STATUS_ORDER: tuple[RunStatus, ...] = (
    "initializing",
    "creating_issue",
    "spawning",
    "running",
    "completed",
    "partially_failed",
    "failed",
)
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "partially_failed", "failed"})
TERMINAL_SLOT_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled"})
_VALID_SLOT_STATUSES = {"pending", "starting", "running", "succeeded", "failed", "cancelled"}


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class FeatureRequest:
    """One submitted feature: where to work, what to build, and how many agents."""
    directory: str
    description: str
    agent_count: int

    def validate(self) -> None:
        """Raise ``InvalidRequest`` unless every field is usable."""
        if not str(self.directory or "").strip():
            raise InvalidRequest("directory must not be empty")
        if not str(self.description or "").strip():
            raise InvalidRequest("description must not be empty")
        if isinstance(self.agent_count, bool) or not isinstance(self.agent_count, int):
            raise InvalidRequest("agent_count must be an integer")
        if not MIN_AGENT_COUNT <= self.agent_count <= MAX_AGENT_COUNT:
            raise InvalidRequest(
                f"agent_count must be between {MIN_AGENT_COUNT} and {MAX_AGENT_COUNT}, got {self.agent_count}"
            )

    @property
    def title(self) -> str:
        """First non-empty line of the description, trimmed for an issue title."""
        for line in self.description.splitlines():
            text = line.strip().lstrip("#").strip()
            if text:
                return text if len(text) <= 80 else text[:77].rstrip() + "..."
        return "Feature request"

    def to_dict(self) -> dict[str, Any]:
        """Serialize the request to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureRequest":
        """Deserialize a request without validating it."""
        raw_count = _optional_int(data.get("agent_count"))
        return cls(
            directory=str(data.get("directory") or ""),
            description=str(data.get("description") or ""),
            agent_count=raw_count if raw_count is not None else 0,
        )


@dataclass
class AgentHandle:
    """Opaque reference to one launched agent process."""
    id: str = field(default_factory=lambda: _id("agent"))
    pid: Optional[int] = None
    terminal: bool = False
    worktree: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the handle."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentHandle":
        """Deserialize a handle from persisted data."""
        return cls(
            id=str(data.get("id") or _id("agent")),
            pid=_optional_int(data.get("pid")),
            terminal=bool(data.get("terminal")),
            worktree=(str(data.get("worktree")) if data.get("worktree") else None),
        )


@dataclass
class AgentSlot:
    """One agent's unit of work inside a run."""
    agent_index: int
    slot_id: int = 0
    branch_name: Optional[str] = None
    handle: Optional[AgentHandle] = None
    status: SlotStatus = "pending"
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SLOT_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Serialize the slot, including the nested handle."""
        data = asdict(self)
        data["handle"] = self.handle.to_dict() if self.handle else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentSlot":
        """Deserialize a slot, falling back to ``pending`` for unknown statuses."""
        status = str(data.get("status") or "pending")
        if status not in _VALID_SLOT_STATUSES:
            status = "pending"
        raw_handle = data.get("handle")
        return cls(
            agent_index=int(data.get("agent_index") or 0),
            slot_id=int(data.get("slot_id") or 0),
            branch_name=(str(data.get("branch_name")) if data.get("branch_name") else None),
            handle=AgentHandle.from_dict(raw_handle) if isinstance(raw_handle, dict) else None,
            status=cast(SlotStatus, status),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            exit_code=_optional_int(data.get("exit_code")),
            error=(str(data.get("error")) if data.get("error") is not None else None),
        )


@dataclass
class Run:
    """One invocation of the feature workflow and the slots it owns."""
    request: FeatureRequest
    id: str = field(default_factory=lambda: _id("run"))
    issue_ref: Optional[str] = None
    issue_url: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    slots: list[AgentSlot] = field(default_factory=list)
    overall_status: RunStatus = "initializing"
    error: Optional[str] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_RUN_STATUSES

    def slot(self, agent_index: int) -> Optional[AgentSlot]:
        for slot in self.slots:
            if slot.agent_index == agent_index:
                return slot
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the run with its request and slots."""
        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "issue_ref": self.issue_ref,
            "issue_url": self.issue_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "slots": [slot.to_dict() for slot in self.slots],
            "overall_status": self.overall_status,
            "error": self.error,
            "cancel_requested": self.cancel_requested,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        """Deserialize a run record from persisted storage."""
        status = str(data.get("overall_status") or "initializing")
        if status not in RUN_STATUS_ORDER:
            status = "failed"
        raw_request = data.get("request")
        slots = [AgentSlot.from_dict(s) for s in list(data.get("slots") or []) if isinstance(s, dict)]
        return cls(
            id=str(data.get("id") or _id("run")),
            request=FeatureRequest.from_dict(raw_request if isinstance(raw_request, dict) else {}),
            issue_ref=(str(data.get("issue_ref")) if data.get("issue_ref") else None),
            issue_url=(str(data.get("issue_url")) if data.get("issue_url") else None),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            slots=sorted(slots, key=lambda s: s.agent_index),
            overall_status=cast(RunStatus, status),
            error=(str(data.get("error")) if data.get("error") is not None else None),
            cancel_requested=bool(data.get("cancel_requested")),
        )


@dataclass(frozen=True)
class AgentStarted:
    """An agent process for one slot is confirmed alive."""
    channel: ClassVar[str] = "feature-agent-started"
    event_type: ClassVar[str] = "agent.started"

    run_id: str
    agent_index: int
    branch_name: str
    slot_id: int
    pid: Optional[int] = None
    terminal: bool = False

    def payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AgentCompleted:
    """A slot reached a terminal status (including launch failures)."""
    channel: ClassVar[str] = "agent-complete"
    event_type: ClassVar[str] = "agent.completed"

    run_id: str
    agent_index: int
    slot_id: int
    success: bool
    status: str
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StatusUpdate:
    """Run-level progress such as issue creation."""
    channel: ClassVar[str] = "feature-status"
    event_type: ClassVar[str] = "feature.status"

    run_id: str
    phase: str
    message: str

    def payload(self) -> dict[str, Any]:
        # ``status`` is the key observers have always read.
        return {"run_id": self.run_id, "status": self.phase, "message": self.message}


@dataclass(frozen=True)
class RunTerminal:
    """The run reached a terminal status; no further events follow for it."""
    channel: ClassVar[str] = "run-terminal"
    event_type: ClassVar[str] = "run.terminal"

    run_id: str
    status: str
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0

    def payload(self) -> dict[str, Any]:
        return asdict(self)


LifecycleEvent = Union[AgentStarted, AgentCompleted, StatusUpdate, RunTerminal]

EVENT_CHANNELS: tuple[str, ...] = (
    AgentStarted.channel,
    AgentCompleted.channel,
    StatusUpdate.channel,
    RunTerminal.channel,
)
