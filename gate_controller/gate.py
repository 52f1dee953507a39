"""
Gate evaluation.

A Gate runs every job a trigger event schedules as an independent, isolated
job instance. Jobs run concurrently and never affect each other: a failing
or crashing job is recorded as failed while the others keep running and
report their own result. The gate passes only if every job passes.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from gate_common.errors import FailureKind
from gate_common.models import GateResult, JobEvent, JobResult, JobSpec, TriggerEvent, Workflow

from .container_manager import ContainerManager
from .executor import run_job_streaming

logger = logging.getLogger(__name__)

EventCallback = Callable[[JobEvent], Awaitable[None]]
ResultCallback = Callable[[JobResult], Awaitable[None]]


class Gate:
    """Evaluates a workflow against trigger events."""

    def __init__(
        self,
        workflow: Workflow,
        container_manager: ContainerManager | None = None,
        job_timeout_minutes: float | None = None,
    ):
        """
        Initialize the gate.

        Args:
            workflow: Jobs and triggers to evaluate
            container_manager: Docker operations for service dependencies
            job_timeout_minutes: Overrides every job's own timeout when set
        """
        self.workflow = workflow
        self.container_manager = container_manager or ContainerManager()
        self.job_timeout_minutes = job_timeout_minutes

    async def evaluate(
        self,
        event: TriggerEvent,
        source: Path,
        run_id: str | None = None,
        on_event: EventCallback | None = None,
        on_result: ResultCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GateResult:
        """
        Run all jobs scheduled by an event and aggregate their results.

        Args:
            event: The push or pull request being checked
            source: Project directory or zip archive of the change
            run_id: Identifier of this evaluation (generated when omitted)
            on_event: Awaited for every job event, in order per job
            on_result: Awaited when a job starts and when it finishes
            cancel_event: Set to stop running steps

        Returns:
            GateResult with one JobResult per scheduled job
        """
        run_id = run_id or str(uuid.uuid4())
        jobs = self.workflow.jobs_for(event)

        if not jobs:
            logger.info(
                f"Run {run_id}: {event.event} on {event.ref} does not trigger "
                f"'{self.workflow.name}'"
            )
            return GateResult(run_id=run_id, triggered=False)

        logger.info(
            f"Run {run_id}: scheduling {len(jobs)} job(s) for {event.event} on {event.ref}: "
            f"{', '.join(job.id for job in jobs)}"
        )

        results = await asyncio.gather(
            *(
                self._run_job(job, source, run_id, on_event, on_result, cancel_event)
                for job in jobs
            )
        )

        gate_result = GateResult(run_id=run_id, triggered=True, jobs=list(results))
        logger.info(
            f"Run {run_id}: gate {'passed' if gate_result.passed else 'failed'} "
            f"({', '.join(f'{r.job_id}={r.status}' for r in results)})"
        )
        return gate_result

    def _timeout_seconds(self, job: JobSpec) -> float:
        minutes = self.job_timeout_minutes or job.timeout_minutes
        return minutes * 60

    async def _run_job(
        self,
        job: JobSpec,
        source: Path,
        run_id: str,
        on_event: EventCallback | None,
        on_result: ResultCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> JobResult:
        result = JobResult(
            job_id=job.id,
            name=job.name,
            status="running",
            start_time=datetime.now(UTC),
        )
        await self._notify(on_result, result)

        timeout = self._timeout_seconds(job)
        try:
            async with asyncio.timeout(timeout):
                async for job_event in run_job_streaming(
                    job, source, self.container_manager, run_id, cancel_event
                ):
                    await self._notify(on_event, job_event)
                    if job_event.type == "complete":
                        result.success = job_event.success
                        result.failure_kind = job_event.failure_kind
                        result.exit_code = job_event.exit_code
        except TimeoutError:
            logger.error(f"Run {run_id}: job {job.id} timed out after {timeout}s")
            result.success = False
            result.failure_kind = FailureKind.TIMEOUT.value
            await self._notify(
                on_event,
                JobEvent(
                    type="complete",
                    job_id=job.id,
                    data=f"Job timed out after {timeout:g}s\n",
                    success=False,
                    failure_kind=result.failure_kind,
                ),
            )
        except Exception as e:
            # A crashing job fails alone; sibling jobs are unaffected
            logger.error(f"Run {run_id}: job {job.id} crashed: {e}", exc_info=True)
            result.success = False
            result.failure_kind = FailureKind.ENVIRONMENT_UNAVAILABLE.value
            await self._notify(
                on_event,
                JobEvent(
                    type="complete",
                    job_id=job.id,
                    data=f"Error running job: {e}\n",
                    success=False,
                    failure_kind=result.failure_kind,
                ),
            )

        if result.success is None:
            result.success = False
        result.status = "passed" if result.success else "failed"
        result.end_time = datetime.now(UTC)

        logger.info(f"Run {run_id}: job {job.id} {result.status}")
        await self._notify(on_result, result)
        return result

    async def _notify(self, callback, payload) -> None:
        """Deliver a payload; reporting failures never change a job's outcome."""
        if callback is None:
            return
        try:
            await callback(payload)
        except Exception as e:
            logger.error(f"Error delivering {type(payload).__name__}: {e}", exc_info=True)
