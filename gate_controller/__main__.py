"""
Standalone entrypoint for running the gate controller.

Usage:
    python -m gate_controller [OPTIONS]
    ci-gate-controller [OPTIONS]  (after pip install)

Environment Variables:
    GATE_DB_PATH: Database path (default: ci_gate.db)
    GATE_WORKFLOW: Workflow YAML file (default: built-in code quality gate)
    GATE_CONTAINER_PREFIX: Service container name prefix (default: ci-gate-)
    GATE_RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 2.0)
    GATE_SERVICE_READY_TIMEOUT: Seconds a service may take to become ready (default: 120)
    GATE_JOB_TIMEOUT: Minutes before any job is failed (default: per-job timeout-minutes)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from gate_common.errors import WorkflowError
from gate_common.models import Workflow
from gate_common.workflow import code_quality_workflow, load_workflow
from gate_controller.container_manager import ContainerManager
from gate_controller.controller import GateController
from gate_controller.gate import Gate
from gate_persistence.sqlite_repository import SQLiteGateRunRepository

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="CI Gate Controller - executes queued gate runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  GATE_DB_PATH                Database path (default: ci_gate.db)
  GATE_WORKFLOW               Workflow YAML file (default: built-in code quality gate)
  GATE_CONTAINER_PREFIX       Service container name prefix (default: ci-gate-)
  GATE_RECONCILE_INTERVAL     Seconds between reconciliation loops (default: 2.0)
  GATE_SERVICE_READY_TIMEOUT  Seconds a service may take to become ready (default: 120)
  GATE_JOB_TIMEOUT            Minutes before any job is failed

Note: Command-line arguments override environment variables.

Examples:
  # Run the built-in gate with default settings
  ci-gate-controller

  # Use a custom workflow and database
  ci-gate-controller --workflow .github/workflows/code-quality.yml --db-path /tmp/gate.db

  # Enable debug logging
  ci-gate-controller --log-level DEBUG
        """,
    )

    parser.add_argument("--db-path", type=str, default=None, help="Path to SQLite database file")
    parser.add_argument("--workflow", type=str, default=None, help="Workflow YAML file")
    parser.add_argument(
        "--container-prefix", type=str, default=None, help="Service container name prefix"
    )
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between reconciliation loops"
    )
    parser.add_argument(
        "--ready-timeout",
        type=float,
        default=None,
        help="Seconds a service dependency may take to become ready",
    )
    parser.add_argument(
        "--job-timeout", type=float, default=None, help="Minutes before any job is failed"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_database_path(args: argparse.Namespace) -> str:
    if args.db_path:
        return args.db_path
    return os.environ.get("GATE_DB_PATH", "ci_gate.db")


def get_container_prefix(args: argparse.Namespace) -> str:
    if args.container_prefix is not None:
        return args.container_prefix
    return os.environ.get("GATE_CONTAINER_PREFIX", "ci-gate-")


def _positive_float(
    cli_value: float | None, env_name: str, default: float | None
) -> float | None:
    """
    Resolve a positive number from CLI, then environment, then default.

    Invalid values are logged and replaced by the default.
    """
    if cli_value is not None:
        if cli_value <= 0:
            logger.warning(f"Invalid value {cli_value} for {env_name}, using default {default}")
            return default
        return cli_value

    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {env_name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {env_name}={value}, using default {default}")
        return default
    return value


def get_reconcile_interval(args: argparse.Namespace) -> float:
    return _positive_float(args.interval, "GATE_RECONCILE_INTERVAL", 2.0) or 2.0


def get_ready_timeout(args: argparse.Namespace) -> float:
    return _positive_float(args.ready_timeout, "GATE_SERVICE_READY_TIMEOUT", 120.0) or 120.0


def get_job_timeout(args: argparse.Namespace) -> float | None:
    return _positive_float(args.job_timeout, "GATE_JOB_TIMEOUT", None)


def get_workflow(args: argparse.Namespace) -> Workflow:
    """
    Load the configured workflow, or the built-in code quality gate.

    Raises:
        WorkflowError: If the configured file is missing or malformed
    """
    path = args.workflow or os.environ.get("GATE_WORKFLOW")
    if not path:
        return code_quality_workflow()
    return load_workflow(path)


async def run_controller(args: argparse.Namespace) -> None:
    """
    Initialize and run the gate controller until SIGINT or SIGTERM.
    """
    db_path = get_database_path(args)
    container_prefix = get_container_prefix(args)
    reconcile_interval = get_reconcile_interval(args)
    ready_timeout = get_ready_timeout(args)
    job_timeout = get_job_timeout(args)
    workflow = get_workflow(args)

    logger.info("Starting CI Gate Controller")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Workflow: {workflow.name} ({', '.join(workflow.jobs)})")
    logger.info(f"  Container prefix: {container_prefix}")
    logger.info(f"  Reconcile interval: {reconcile_interval}s")
    logger.info(f"  Service ready timeout: {ready_timeout}s")
    logger.info(f"  Job timeout: {f'{job_timeout} min' if job_timeout else 'per job'}")

    repository = SQLiteGateRunRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    container_manager = ContainerManager(
        container_name_prefix=container_prefix, ready_timeout=ready_timeout
    )
    gate = Gate(workflow, container_manager, job_timeout_minutes=job_timeout)
    controller = GateController(
        repository=repository,
        gate=gate,
        reconcile_interval=reconcile_interval,
    )

    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await controller.start()
        logger.info("Controller started successfully")
        await shutdown_event.wait()
    except Exception as e:
        logger.error(f"Controller error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping controller...")
        await controller.stop()
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Controller stopped cleanly")


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except WorkflowError as e:
        logger.error(f"Invalid workflow: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
