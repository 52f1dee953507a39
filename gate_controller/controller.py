"""
Gate controller with reconciliation loop.

This module implements a Kubernetes-style controller pattern that continuously
reconciles the desired state (gate runs in the DB) with actual state (running
evaluations and service containers), taking corrective actions when they
diverge.
"""

import asyncio
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from gate_common.models import GateRun
from gate_common.repository import GateRunRepository

from .container_manager import ContainerInfo
from .gate import Gate

logger = logging.getLogger(__name__)


class GateController:
    """
    Controller that executes queued gate runs.

    This controller runs a continuous loop that:
    1. Fetches desired state from the database (gate runs)
    2. Starts queued runs, one at a time so fixed service ports never clash
    3. Marks runs that lost their evaluation (crash) as failed
    4. Removes service containers no live run owns
    """

    def __init__(
        self,
        repository: GateRunRepository,
        gate: Gate,
        reconcile_interval: float = 2.0,
        max_concurrent_runs: int = 1,
    ):
        """
        Initialize the gate controller.

        Args:
            repository: Gate run repository for persisting state
            gate: Gate evaluating the workflow
            reconcile_interval: Seconds between reconciliation loops
            max_concurrent_runs: Gate runs evaluated at the same time
        """
        self.repository = repository
        self.gate = gate
        self.container_manager = gate.container_manager
        self.reconcile_interval = reconcile_interval
        self.max_concurrent_runs = max_concurrent_runs

        self.active_runs: dict[str, asyncio.Task] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the controller reconciliation loop."""
        if self._running:
            logger.warning("Controller already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Gate controller started")

    async def stop(self) -> None:
        """Stop the controller and cancel in-flight runs."""
        if not self._running:
            return

        logger.info("Stopping gate controller...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        tasks = list(self.active_runs.values())
        for task in tasks:
            task.cancel()
        # Runs record their own failure and tear down services when cancelled
        await asyncio.gather(*tasks, return_exceptions=True)

        self.active_runs.clear()
        logger.info("Gate controller stopped")

    async def _run_loop(self) -> None:
        """Main reconciliation loop."""
        while self._running:
            try:
                await self.reconcile_once()
                await asyncio.sleep(self.reconcile_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(self.reconcile_interval)

    async def reconcile_once(self) -> None:
        """
        Perform one reconciliation cycle.

        Compares desired state (DB) with actual state (tasks and Docker) and
        takes corrective actions.
        """
        try:
            runs = await self.repository.list_runs()
            logger.debug(f"Reconciliation: Found {len(runs)} runs in database")

            # Oldest first so queued runs execute in arrival order
            for run in reversed(runs):
                try:
                    await self._reconcile_run(run)
                except Exception as e:
                    logger.error(f"Error reconciling run {run.id}: {e}", exc_info=True)

            await self._cleanup_orphaned_containers()

        except Exception as e:
            logger.error(f"Error in reconciliation cycle: {e}", exc_info=True)

    async def _reconcile_run(self, run: GateRun) -> None:
        if run.status == "queued":
            if run.id in self.active_runs:
                return
            if len(self.active_runs) >= self.max_concurrent_runs:
                return
            if not run.zip_file_path or not Path(run.zip_file_path).is_file():
                await self._mark_run_failed(
                    run.id, f"Stashed change not found: {run.zip_file_path}"
                )
                return
            self._start_run(run)

        elif run.status == "running" and run.id not in self.active_runs:
            # Evaluation lost, e.g. the controller crashed mid-run
            logger.error(f"Run {run.id} is running but has no live evaluation")
            await self.container_manager.cleanup_run(run.id)
            await self._mark_run_failed(run.id, "Evaluation lost during execution")

        elif run.is_terminal and run.id not in self.active_runs:
            self._remove_stash(run)

    def _start_run(self, run: GateRun) -> None:
        logger.info(f"Starting run {run.id} ({run.event} on {run.ref})")
        task = asyncio.create_task(self._execute_run(run))
        self.active_runs[run.id] = task
        task.add_done_callback(lambda _: self.active_runs.pop(run.id, None))

    async def _execute_run(self, run: GateRun) -> None:
        """Evaluate the gate for one run and persist every event and result."""
        assert run.zip_file_path is not None

        async def record_event(event):
            await self.repository.add_event(run.id, event)

        async def record_result(result):
            await self.repository.save_job_result(run.id, result)

        try:
            await self.repository.update_run_status(
                run.id, "running", start_time=datetime.now(UTC)
            )
            result = await self.gate.evaluate(
                run.trigger_event,
                Path(run.zip_file_path),
                run_id=run.id,
                on_event=record_event,
                on_result=record_result,
            )
            await self.repository.complete_run(
                run.id, success=result.passed, end_time=datetime.now(UTC)
            )
            logger.info(f"Run {run.id} finalized with success={result.passed}")
        except asyncio.CancelledError:
            await self._mark_run_failed(run.id, "Controller stopped during execution")
            raise
        except Exception as e:
            logger.error(f"Failed to execute run {run.id}: {e}", exc_info=True)
            await self._mark_run_failed(run.id, f"Failed to execute run: {e}")
        finally:
            self._remove_stash(run)

    async def _mark_run_failed(self, run_id: str, reason: str) -> None:
        """
        Mark a run as failed with a reason.

        The reason is logged; runs that fail this way have no job results.
        """
        try:
            logger.error(f"Run {run_id} failed: {reason}")
            await self.repository.complete_run(
                run_id, success=False, end_time=datetime.now(UTC), status="failed"
            )
        except Exception as e:
            logger.error(f"Error marking run {run_id} as failed: {e}", exc_info=True)

    def _remove_stash(self, run: GateRun) -> None:
        if run.zip_file_path and os.path.exists(run.zip_file_path):
            try:
                os.unlink(run.zip_file_path)
                logger.debug(f"Removed stashed change for run {run.id}")
            except OSError as e:
                logger.warning(f"Failed to remove {run.zip_file_path}: {e}")

    async def _cleanup_orphaned_containers(self) -> None:
        """
        Remove service containers of our runs that are not being evaluated.

        Containers whose run is unknown to this controller's database belong
        to someone else (e.g. a local `ci-gate run`) and are left alone.
        """
        containers: list[ContainerInfo] = await self.container_manager.list_gate_containers()

        for container in containers:
            if container.run_id in self.active_runs:
                continue
            if container.run_id is None or await self.repository.get_run(container.run_id) is None:
                logger.debug(f"Skipping container {container.name} of a foreign run")
                continue
            logger.warning(
                f"Found orphaned container {container.container_id} "
                f"(name: {container.name}, run: {container.run_id}), cleaning up"
            )
            await self.container_manager.cleanup_container(container.name)
