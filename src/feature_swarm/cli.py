"""
Feature Swarm
=============

Fan one feature request out to several coding agents, each on its own git
branch, tracked by a single GitHub issue.

Usage:
  feature-swarm execute --directory . --ticket "Add dark mode" --agents 3

Other commands:
  feature-swarm status [RUN_ID]
  feature-swarm cancel RUN_ID
  feature-swarm issues [--repo owner/name]
  feature-swarm serve --port 8080
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from .errors import (
    FeatureSwarmError,
    InvalidRequest,
    IssueCreationError,
    IssueTrackerError,
    SpawnError,
    UnknownRun,
)
from .github.client import GhCliFacade
from .runtime.domain.models import TERMINAL_RUN_STATUSES, FeatureRequest, Run
from .runtime.events import EventBus
from .runtime.orchestrator import FeatureOrchestrator, create_orchestrator
from .runtime.orchestrator.agent_adapter import terminate_process_group
from .runtime.storage import Container
from .workers.config import get_agent_runtime_config

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False))


def _build(args: argparse.Namespace, *, recover: bool = True) -> tuple[Container, EventBus, FeatureOrchestrator]:
    container = Container(args.state_dir)
    bus = EventBus(container.events)
    orchestrator = create_orchestrator(
        container,
        bus,
        cli_mode=getattr(args, "mode", None),
        cli_command=getattr(args, "agent_command", None),
        recover=recover,
    )
    return container, bus, orchestrator


def _run_summary(run: Run) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "status": run.overall_status,
        "issue": run.issue_ref,
        "issue_url": run.issue_url,
        "agents": [
            {
                "agent_index": slot.agent_index,
                "slot_id": slot.slot_id,
                "branch": slot.branch_name,
                "status": slot.status,
                "pid": slot.handle.pid if slot.handle else None,
                "error": slot.error,
            }
            for slot in run.slots
        ],
        "error": run.error,
    }


def cmd_execute(args: argparse.Namespace) -> int:
    if args.ticket_file:
        ticket = Path(args.ticket_file).read_text(encoding="utf-8")
    else:
        ticket = args.ticket or ""
    _, bus, orchestrator = _build(args)
    request = FeatureRequest(
        directory=str(Path(args.directory).expanduser().resolve()),
        description=ticket,
        agent_count=args.agents,
    )
    # Subscribe before launching so no lifecycle event is missed.
    subscription = bus.subscribe()
    try:
        try:
            execution = orchestrator.execute_feature(request)
        except (InvalidRequest, IssueCreationError, SpawnError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2
        _print_json({"run_id": execution.run_id, "branch_names": execution.branch_names, "run_ids": execution.slot_ids})
        if args.detach:
            return 0
        run_id = execution.run_id
        while True:
            record = subscription.get(timeout=1.0)
            if record is None:
                if orchestrator.get_run(run_id).is_terminal:
                    break
                continue
            if record.get("run_id") != run_id:
                continue
            print(json.dumps({"channel": record["channel"], **record["payload"]}), flush=True)
            if record["channel"] == "run-terminal":
                break
        run = orchestrator.get_run(run_id)
        _print_json(_run_summary(run))
        return 0 if run.overall_status == "completed" else 1
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling live agents")
        return 130
    finally:
        subscription.close()
        if not args.detach:
            orchestrator.shutdown(timeout=10.0)


def cmd_status(args: argparse.Namespace) -> int:
    _, _, orchestrator = _build(args, recover=False)
    if args.run_id:
        try:
            run = orchestrator.get_run(args.run_id)
        except UnknownRun as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        _print_json(_run_summary(run))
        return 0
    runs = orchestrator.list_runs()
    if args.active:
        runs = [run for run in runs if run.overall_status not in TERMINAL_RUN_STATUSES]
    _print_json([_run_summary(run) for run in runs])
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    """Cancel a run owned by another process (``execute`` or ``serve``).

    The request is written to the run table, where the owning process picks
    it up, and the run's live agents are signalled directly.
    """
    run = Container(args.state_dir).runs.request_cancel(args.run_id)
    if run is None:
        print(f"error: Unknown run: {args.run_id}", file=sys.stderr)
        return 1
    signalled = []
    if run.overall_status not in TERMINAL_RUN_STATUSES:
        for slot in run.slots:
            if slot.is_terminal or slot.handle is None or not slot.handle.pid:
                continue
            if terminate_process_group(slot.handle.pid):
                signalled.append(slot.agent_index)
    _print_json({"run_id": run.id, "status": run.overall_status, "signalled_agents": signalled})
    return 0


def cmd_issues(args: argparse.Namespace) -> int:
    facade = GhCliFacade()
    try:
        if args.repo:
            issues = facade.list_issues(args.repo)
        else:
            container = Container(args.state_dir)
            config = get_agent_runtime_config(config=container.config.load())
            projects_dir = Path(args.projects_dir).expanduser() if args.projects_dir else config.projects_dir
            issues = facade.list_project_issues(projects_dir)
    except IssueTrackerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _print_json([issue.to_dict() for issue in issues])
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server.api import create_app

    uvicorn.run(create_app(state_dir=args.state_dir), host=args.host, port=args.port, log_level="info")
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="feature-swarm",
        description="Feature Swarm - run several coding agents on one feature, one branch each",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Runtime state directory (default: ~/.feature_swarm)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    execute = sub.add_parser("execute", help="Create the tracking issue and launch agents")
    execute.add_argument("--directory", default=".", help="Git repository to work in (default: current directory)")
    ticket = execute.add_mutually_exclusive_group(required=True)
    ticket.add_argument("--ticket", help="Feature request text")
    ticket.add_argument("--ticket-file", help="File holding the feature request")
    execute.add_argument("--agents", type=int, default=1, help="Number of agents, 1-5 (default: 1)")
    execute.add_argument(
        "--mode",
        choices=["background", "terminal", "scripted"],
        default=None,
        help="Agent launch mode (default: agents.mode from config)",
    )
    execute.add_argument(
        "--agent-command",
        default=None,
        help="Agent CLI command; the prompt arrives on stdin (default: agents.command from config)",
    )
    execute.add_argument(
        "--detach",
        action="store_true",
        help="Return after launching; agent outcomes are then not recorded",
    )
    execute.set_defaults(func=cmd_execute)

    status = sub.add_parser("status", help="Show one run or all runs")
    status.add_argument("run_id", nargs="?", default=None)
    status.add_argument("--active", action="store_true", help="Only runs that are not terminal")
    status.set_defaults(func=cmd_status)

    cancel = sub.add_parser("cancel", help="Cancel a run's agents")
    cancel.add_argument("run_id")
    cancel.set_defaults(func=cmd_cancel)

    issues = sub.add_parser("issues", help="List GitHub issues")
    issues.add_argument("--repo", default=None, help="owner/name; omit to scan the projects directory")
    issues.add_argument("--projects-dir", default=None, help="Directory of projects to scan")
    issues.set_defaults(func=cmd_issues)

    serve = sub.add_parser("serve", help="Run the HTTP and websocket API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.set_defaults(func=cmd_serve)

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return int(args.func(args))
    except FeatureSwarmError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
