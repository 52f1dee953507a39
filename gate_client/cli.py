import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from gate_common.errors import WorkflowError
from gate_common.models import GateResult, JobEvent, TriggerEvent
from gate_common.workflow import SUPPORTED_EVENTS, code_quality_workflow, load_workflow

from .client import get_run, list_runs, submit_change, wait_for_run

# Local runs never share container names with a controller on the same host
LOCAL_CONTAINER_PREFIX = "ci-gate-local-"


def get_server_url() -> str:
    """
    Get the gate server URL from environment variable or use default.

    Environment variables:
    - CI_GATE_SERVER_URL: Custom server URL (useful for testing with different ports)
    """
    return os.environ.get("CI_GATE_SERVER_URL", "http://localhost:8000")


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


def format_success(success: bool | None) -> str:
    """Format success value to human-readable string."""
    if success is None:
        return "-"
    return "✓" if success else "✗"


def print_event(event: dict) -> None:
    """Print one streamed job event, prefixed with its job."""
    prefix = f"[{event['job_id']}] " if event.get("job_id") else ""
    if event["type"] == "step":
        print(f"{prefix}==> {event.get('data', '')}", flush=True)
    elif event["type"] == "log":
        print(f"{prefix}{event.get('data', '')}", end="", flush=True)
    elif event["type"] == "complete":
        if event.get("data"):
            print(f"{prefix}{event['data']}", end="", flush=True)
        outcome = "passed" if event.get("success") else f"failed ({event.get('failure_kind')})"
        print(f"{prefix}job {outcome}", flush=True)


def print_job_table(jobs: list[dict]) -> None:
    """Print per-job results of a run."""
    print(f"{'JOB':<16} {'STATUS':<10} {'FAILURE':<26} {'SUCCESS':<8}")
    print("-" * 64)
    for job in jobs:
        print(
            f"{job['job_id']:<16} {job['status']:<10} "
            f"{job.get('failure_kind') or '-':<26} {format_success(job.get('success')):<8}"
        )


async def run_local(
    project_dir: Path, event: TriggerEvent, workflow_path: str | None
) -> GateResult:
    """Evaluate the gate on a local project directory, printing events live."""
    from gate_controller.container_manager import ContainerManager
    from gate_controller.gate import Gate

    workflow = load_workflow(workflow_path) if workflow_path else code_quality_workflow()
    gate = Gate(workflow, container_manager=ContainerManager(LOCAL_CONTAINER_PREFIX))

    async def on_event(job_event: JobEvent) -> None:
        print_event(job_event.to_dict())

    return await gate.evaluate(event, project_dir, on_event=on_event)


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def main(argv: list[str] | None = None):
    """Main entry point for the gate CLI."""
    parser = argparse.ArgumentParser(description="CI verification gate")
    subparsers = parser.add_subparsers(dest="command")

    # ci-gate run [--event EVENT] [--ref REF] [--workflow FILE]
    run_parser = subparsers.add_parser(
        "run", help="Run the gate locally on the current directory"
    )
    run_parser.add_argument("--event", choices=SUPPORTED_EVENTS, default="pull_request")
    run_parser.add_argument("--ref", default="main", help="Branch the change targets")
    run_parser.add_argument("--workflow", help="Workflow YAML (default: built-in gate)")
    run_parser.add_argument(
        "--verbose", action="store_true", help="Show controller logging"
    )

    # ci-gate submit [--event EVENT] [--ref REF] [--sha SHA] [--async]
    submit_parser = subparsers.add_parser(
        "submit", help="Submit the current directory to the gate server"
    )
    submit_parser.add_argument("--event", choices=SUPPORTED_EVENTS, default="pull_request")
    submit_parser.add_argument("--ref", default="main", help="Branch the change targets")
    submit_parser.add_argument("--sha", help="Commit identifier")
    submit_parser.add_argument(
        "--async",
        dest="async_mode",
        action="store_true",
        help="Return the run ID immediately instead of waiting",
    )

    # ci-gate wait <run_id> [--all]
    wait_parser = subparsers.add_parser(
        "wait", help="Wait for a run to finish and stream its events"
    )
    wait_parser.add_argument("run_id", help="Run ID to wait for")
    wait_parser.add_argument(
        "--all",
        dest="from_beginning",
        action="store_true",
        help="Show all events from beginning (default: only show new events)",
    )

    # ci-gate list [--json] [--ref REF]
    list_parser = subparsers.add_parser("list", help="List gate runs")
    list_parser.add_argument("--json", dest="json_mode", action="store_true")
    list_parser.add_argument("--ref", help="Only list runs for this branch")

    # ci-gate show <run_id> [--json]
    show_parser = subparsers.add_parser("show", help="Show a run's per-job results")
    show_parser.add_argument("run_id")
    show_parser.add_argument("--json", dest="json_mode", action="store_true")

    args = parser.parse_args(argv)
    server_url = get_server_url()

    if args.command == "run":
        logging.basicConfig(
            level=logging.INFO if args.verbose else logging.WARNING,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        event = TriggerEvent(event=args.event, ref=args.ref)
        try:
            result = asyncio.run(run_local(Path.cwd(), event, args.workflow))
        except WorkflowError as e:
            _fail(str(e))
        except KeyboardInterrupt:
            print("\n\nGate run cancelled by user.", file=sys.stderr)
            sys.exit(130)

        if not result.triggered:
            print(f"{args.event} on {args.ref} does not trigger the gate.")
            sys.exit(0)

        print()
        print_job_table([job.to_dict() for job in result.jobs])
        print(f"\nGate {'passed' if result.passed else 'failed'}.")
        sys.exit(0 if result.passed else 1)

    elif args.command == "submit":
        try:
            response = submit_change(
                Path.cwd(), args.event, args.ref, sha=args.sha, server_url=server_url
            )
        except RuntimeError as e:
            _fail(str(e))

        if not response.get("triggered"):
            print(f"{args.event} on {args.ref} does not trigger the gate.")
            sys.exit(0)

        run_id = response["run_id"]
        if args.async_mode:
            print(f"Run submitted: {run_id}")
            sys.exit(0)

        print(f"Run ID: {run_id}", file=sys.stderr)
        print(
            f"You can reconnect from another terminal with: ci-gate wait {run_id}",
            file=sys.stderr,
        )
        print("", file=sys.stderr)
        args.run_id = run_id
        args.from_beginning = True
        args.command = "wait"

    if args.command == "wait":
        try:
            success = False
            for event in wait_for_run(
                args.run_id, server_url=server_url, from_beginning=args.from_beginning
            ):
                if event["type"] == "gate":
                    success = event.get("success", False)
                    if event.get("jobs"):
                        print()
                        print_job_table(event["jobs"])
                    print(f"\nGate {'passed' if success else 'failed'}.")
                else:
                    print_event(event)
            sys.exit(0 if success else 1)
        except KeyboardInterrupt:
            print(f"\n\nStopped waiting for run {args.run_id}.", file=sys.stderr)
            print(
                "The run continues on the server. Use 'ci-gate wait' to reconnect.",
                file=sys.stderr,
            )
            sys.exit(130)

    elif args.command == "list":
        try:
            runs = list_runs(server_url=server_url, ref=args.ref)
        except RuntimeError as e:
            _fail(str(e))

        if args.json_mode:
            print(json.dumps(runs, indent=2))
            sys.exit(0)

        if not runs:
            print("No runs found.")
            sys.exit(0)

        print(
            f"{'RUN ID':<38} {'EVENT':<13} {'REF':<20} {'STATUS':<10} {'CREATED':<20} {'SUCCESS':<8}"
        )
        print("-" * 112)
        for run in runs:
            print(
                f"{run['run_id'][:36]:<38} {run['event']:<13} {run['ref'][:20]:<20} "
                f"{run['status']:<10} {format_time(run.get('created_at')):<20} "
                f"{format_success(run.get('success')):<8}"
            )
        sys.exit(0)

    elif args.command == "show":
        try:
            run = get_run(args.run_id, server_url=server_url)
        except RuntimeError as e:
            _fail(str(e))

        if args.json_mode:
            print(json.dumps(run, indent=2))
            sys.exit(0)

        print(f"Run:     {run['id']}")
        print(f"Event:   {run['event']} on {run['ref']}")
        print(f"Status:  {run['status']}")
        print(f"Started: {format_time(run.get('start_time'))}")
        print(f"Ended:   {format_time(run.get('end_time'))}")
        print(f"Gate:    {format_success(run.get('success'))}")
        if run.get("jobs"):
            print()
            print_job_table(run["jobs"])
        sys.exit(0)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
