from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from feature_swarm import __version__
from feature_swarm.errors import NetworkError
from feature_swarm.github.client import IssueSummary
from feature_swarm.runtime.orchestrator.agent_adapter import ScriptedAgentAdapter
from feature_swarm.server.api import create_app


@pytest.fixture
def adapter() -> ScriptedAgentAdapter:
    return ScriptedAgentAdapter()


@pytest.fixture
def client(tmp_path: Path, facade: Any, adapter: ScriptedAgentAdapter) -> Iterator[TestClient]:
    app = create_app(state_dir=tmp_path / "state", facade=facade, adapter=adapter)
    with TestClient(app) as test_client:
        yield test_client


def _wait(client: TestClient, run_id: str) -> dict[str, Any]:
    client.app.state.orchestrator.wait_for_run(run_id, timeout=10)  # type: ignore[attr-defined]
    response = client.get(f"/api/runs/{run_id}")
    assert response.status_code == 200
    return response.json()


def test_health_and_root(client: TestClient, tmp_path: Path) -> None:
    assert client.get("/healthz").json() == {"status": "ok", "version": __version__}
    root = client.get("/").json()
    assert root["name"] == "Feature Swarm"
    assert root["state_dir"] == str((tmp_path / "state").resolve())


def test_execute_feature_spawns_agents(client: TestClient, git_repo: Path) -> None:
    response = client.post(
        "/api/features/execute",
        json={"directory": str(git_repo), "ticket": "Add dark mode", "agent_count": 3},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["branch_names"]) == 3
    assert len(set(body["branch_names"])) == 3
    assert all(isinstance(slot_id, int) for slot_id in body["run_ids"])
    assert all(handle is not None for handle in body["agent_handles"])

    detail = _wait(client, body["run_id"])
    assert detail["terminal"] is True
    assert detail["run"]["overall_status"] == "completed"
    assert detail["run"]["issue_ref"] == "acme/widgets#42"

    events = client.get(f"/api/runs/{body['run_id']}/events").json()["events"]
    assert events[0]["payload"]["status"] == "creating_issue"
    assert events[-1]["channel"] == "run-terminal"
    later = client.get(f"/api/runs/{body['run_id']}/events", params={"after": len(events) - 1}).json()["events"]
    assert [record["channel"] for record in later] == ["run-terminal"]

    runs = client.get("/api/runs").json()["runs"]
    assert [run["id"] for run in runs] == [body["run_id"]]


@pytest.mark.parametrize("agent_count", [0, 6])
def test_out_of_range_agent_count_is_rejected(client: TestClient, git_repo: Path, facade: Any, agent_count: int) -> None:
    response = client.post(
        "/api/features/execute",
        json={"directory": str(git_repo), "ticket": "Add dark mode", "agent_count": agent_count},
    )

    assert response.status_code == 400
    assert facade.calls == []
    assert client.get("/api/runs").json()["runs"] == []


def test_issue_failure_maps_to_bad_gateway(client: TestClient, git_repo: Path, facade: Any, adapter: ScriptedAgentAdapter) -> None:
    facade.issue_error = NetworkError("tracker unreachable")

    response = client.post(
        "/api/features/execute",
        json={"directory": str(git_repo), "ticket": "Add dark mode", "agent_count": 2},
    )

    assert response.status_code == 502
    assert "tracker unreachable" in response.json()["detail"]
    assert adapter.started == []


def test_spawn_failure_maps_to_server_error(client: TestClient, git_repo: Path, facade: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(repo_path: Path, name: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(facade, "create_branch", _broken)

    response = client.post(
        "/api/features/execute",
        json={"directory": str(git_repo), "ticket": "Add dark mode", "agent_count": 2},
    )

    assert response.status_code == 500
    assert "disk full" in response.json()["detail"]
    assert client.get("/api/runs").json()["runs"][0]["overall_status"] == "failed"


def test_unknown_run_is_404(client: TestClient) -> None:
    assert client.get("/api/runs/run-missing").status_code == 404
    assert client.get("/api/runs/run-missing/events").status_code == 404
    assert client.post("/api/runs/run-missing/cancel").status_code == 404


def test_cancel_run(tmp_path: Path, git_repo: Path, facade: Any) -> None:
    app = create_app(state_dir=tmp_path / "state", facade=facade, adapter=ScriptedAgentAdapter(auto_complete=False))
    with TestClient(app) as client:
        run_id = client.post(
            "/api/features/execute",
            json={"directory": str(git_repo), "ticket": "Add dark mode", "agent_count": 2},
        ).json()["run_id"]

        assert client.post(f"/api/runs/{run_id}/cancel").status_code == 200
        detail = _wait(client, run_id)

    assert detail["run"]["cancel_requested"] is True
    assert [slot["status"] for slot in detail["run"]["slots"]] == ["cancelled", "cancelled"]


def test_issue_routes(client: TestClient, facade: Any, tmp_path: Path) -> None:
    facade.issues = [
        IssueSummary(repo="acme/widgets", number=7, title="Dark mode", url="https://github.com/acme/widgets/issues/7", state="open")
    ]

    listed = client.get("/api/issues", params={"repo": "acme/widgets"}).json()
    assert [issue["number"] for issue in listed["issues"]] == [7]
    assert client.get("/api/issues").status_code == 422

    projects = client.get("/api/issues/projects", params={"projects_dir": str(tmp_path)}).json()
    assert projects["projects_dir"] == str(tmp_path)
    assert len(projects["issues"]) == 1

    gh = client.post("/api/gh", json={"args": ["--version"]}).json()
    assert gh["stdout"].startswith("gh version")
    assert ("run_gh", ["--version"]) in facade.calls


def test_websocket_subscribe_handshake(client: TestClient) -> None:
    with client.websocket_connect("/ws") as ws:
        connected = ws.receive_json()
        assert connected["type"] == "connected"
        assert "run-terminal" in connected["payload"]["channels"]

        ws.send_json({"action": "subscribe", "channels": ["agent-complete", "bogus"], "run_id": "run-1"})
        ack = ws.receive_json()
        assert ack["type"] == "subscribed"
        assert ack["payload"] == {"channels": ["agent-complete"], "run_ids": ["run-1"]}

        ws.send_json({"action": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_websocket_client_filters() -> None:
    from feature_swarm.runtime.events.ws import _WsClient

    ws_client = _WsClient(ws=None, channels={"agent-complete"}, run_ids={"run-1"})  # type: ignore[arg-type]

    assert ws_client.accepts({"channel": "agent-complete", "run_id": "run-1"})
    assert not ws_client.accepts({"channel": "agent-complete", "run_id": "run-2"})
    assert not ws_client.accepts({"channel": "feature-status", "run_id": "run-1"})
    assert ws_client.accepts({"channel": "system"})
