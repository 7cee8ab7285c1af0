from __future__ import annotations

from pathlib import Path

import yaml

from feature_swarm.runtime.domain.models import AgentSlot, FeatureRequest, Run
from feature_swarm.runtime.storage.bootstrap import DEFAULT_CONFIG, ensure_state_root
from feature_swarm.runtime.storage.container import Container


def test_ensure_state_root_creates_layout(tmp_path: Path) -> None:
    root = ensure_state_root(tmp_path / "state")

    for name in ("runs.yaml", "events.jsonl", "config.yaml"):
        assert (root / name).exists()
    assert (root / "worktrees").is_dir()
    assert (root / "agent_logs").is_dir()
    config = yaml.safe_load((root / "config.yaml").read_text(encoding="utf-8"))
    assert config["schema_version"] == 1
    for section in DEFAULT_CONFIG:
        assert section in config


def test_user_config_values_survive_bootstrap(tmp_path: Path) -> None:
    root = tmp_path / "state"
    root.mkdir()
    (root / "config.yaml").write_text(
        yaml.safe_dump({"agents": {"mode": "terminal"}, "custom": {"keep": True}}),
        encoding="utf-8",
    )

    ensure_state_root(root)
    ensure_state_root(root)

    config = yaml.safe_load((root / "config.yaml").read_text(encoding="utf-8"))
    assert config["agents"]["mode"] == "terminal"
    assert config["agents"]["command"] == "claude -p"
    assert config["custom"] == {"keep": True}


def test_container_paths_and_run_round_trip(tmp_path: Path) -> None:
    container = Container(tmp_path / "state")
    assert container.worktrees_dir == container.state_root / "worktrees"
    assert container.agent_logs_dir == container.state_root / "agent_logs"

    run = Run(request=FeatureRequest(directory=str(tmp_path), description="Add dark mode", agent_count=2))
    run.slots = [AgentSlot(agent_index=0, slot_id=1, branch_name=f"feature/{run.id}/0")]
    container.runs.upsert(run)
    run.overall_status = "running"
    container.runs.upsert(run)

    stored = Container(tmp_path / "state").runs.get(run.id)
    assert stored is not None
    assert stored.overall_status == "running"
    assert stored.slots[0].branch_name == f"feature/{run.id}/0"
    assert len(container.runs.list()) == 1
    assert container.runs.get("run-missing") is None


def test_cancel_request_survives_a_stale_upsert(tmp_path: Path) -> None:
    container = Container(tmp_path / "state")
    run = Run(request=FeatureRequest(directory=str(tmp_path), description="Add dark mode", agent_count=1))
    run.overall_status = "running"
    container.runs.upsert(run)

    cancelled = Container(tmp_path / "state").runs.request_cancel(run.id)
    assert cancelled is not None and cancelled.cancel_requested
    container.runs.upsert(run)

    stored = container.runs.get(run.id)
    assert stored is not None and stored.cancel_requested
    assert container.runs.request_cancel("run-missing") is None


def test_cancel_request_leaves_finished_runs_alone(tmp_path: Path) -> None:
    container = Container(tmp_path / "state")
    run = Run(request=FeatureRequest(directory=str(tmp_path), description="Add dark mode", agent_count=1))
    run.overall_status = "completed"
    container.runs.upsert(run)

    returned = container.runs.request_cancel(run.id)

    assert returned is not None and returned.cancel_requested is False
    assert container.runs.get(run.id).cancel_requested is False  # type: ignore[union-attr]
