"""
Step and job execution.

Steps run as `sh -c` subprocesses in an isolated per-job workspace on the
host, so service dependencies published on fixed host ports are reachable at
localhost. Output is streamed line by line as JobEvents.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import zipfile
from collections.abc import AsyncGenerator
from pathlib import Path

from gate_common.errors import ContainerError, FailureKind, ServiceUnavailableError
from gate_common.models import JobEvent, JobSpec, Step

from .container_manager import ContainerManager, ServiceHandle

logger = logging.getLogger(__name__)

# Binaries a toolchain action expects on the host, and per-component extras
TOOLCHAIN_BINARIES = {
    "dtolnay/rust-toolchain": ["cargo"],
    "actions-rs/toolchain": ["cargo"],
    "actions/setup-python": ["python3"],
    "actions/setup-node": ["node"],
    "actions/setup-go": ["go"],
}
COMPONENT_BINARIES = {
    "clippy": "cargo-clippy",
    "rustfmt": "rustfmt",
}
CACHE_ACTIONS = ("Swatinem/rust-cache", "actions/cache")
CHECKOUT_ACTION = "actions/checkout"
# VCS metadata and build output never reach a job workspace
EXCLUDED_DIRS = (".git", "__pycache__", "target")

READ_CHUNK_BYTES = 64 * 1024
MAX_LINE_BYTES = 1024 * 1024


def prepare_workspace(source: Path, dest: Path) -> None:
    """
    Populate a job workspace with the change under test.

    Args:
        source: Project directory, or a zip archive of it
        dest: Empty per-job workspace directory

    The source itself is never modified by any job.
    """
    if source.is_file():
        with zipfile.ZipFile(source) as zf:
            zf.extractall(dest)
        return

    shutil.copytree(
        source,
        dest,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(*EXCLUDED_DIRS),
    )


def _action_name(uses: str) -> str:
    return uses.split("@", 1)[0]


def run_action(step: Step, source: Path, workspace: Path) -> tuple[bool, list[str]]:
    """
    Execute a built-in `uses` action.

    Returns:
        Tuple of (success, log lines)
    """
    if step.uses is None:
        raise ValueError(f"Step '{step.display_name}' does not use an action")
    action = _action_name(step.uses)

    if action == CHECKOUT_ACTION:
        prepare_workspace(source, workspace)
        return True, [f"Checked out {source.name} into job workspace\n"]

    if action in TOOLCHAIN_BINARIES:
        required = list(TOOLCHAIN_BINARIES[action])
        components = step.with_.get("components", "")
        for component in components.replace(",", " ").split():
            if component in COMPONENT_BINARIES:
                required.append(COMPONENT_BINARIES[component])
        missing = [binary for binary in required if shutil.which(binary) is None]
        if missing:
            return False, [f"Toolchain not available on host: missing {', '.join(missing)}\n"]
        return True, [f"Using host toolchain ({', '.join(required)})\n"]

    if action in CACHE_ACTIONS:
        return True, ["Build cache is provided by the host workspace\n"]

    return False, [f"Unsupported action: {step.uses}\n"]


async def _read_lines(
    stream: asyncio.StreamReader, cancel_event: asyncio.Event | None
) -> AsyncGenerator[bytes | None, None]:
    """
    Yield output lines of any length; None marks a cancel request.

    Output is read in chunks so a single line longer than the StreamReader
    limit does not fail the step. Lines beyond MAX_LINE_BYTES are emitted in
    pieces.
    """
    pending = b""
    while True:
        if cancel_event and cancel_event.is_set():
            yield None
            return

        # Read with timeout to allow checking cancel_event periodically
        try:
            chunk = await asyncio.wait_for(stream.read(READ_CHUNK_BYTES), timeout=0.1)
        except asyncio.TimeoutError:
            continue
        if not chunk:
            break

        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line + b"\n"
        while len(pending) >= MAX_LINE_BYTES:
            yield pending[:MAX_LINE_BYTES]
            pending = pending[MAX_LINE_BYTES:]

    if pending:
        yield pending


async def run_step_streaming(
    step: Step,
    env: dict[str, str],
    cwd: Path,
    job_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> AsyncGenerator[JobEvent, None]:
    """Run a `run` step, streaming output line-by-line and ending with step_complete."""
    if step.run is None:
        raise ValueError(f"Step '{step.display_name}' has no command to run")

    process = await asyncio.create_subprocess_exec(
        "sh",
        "-c",
        step.run,
        cwd=str(cwd),
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )

    # Assert stdout is available (we specified PIPE)
    assert process.stdout is not None, (
        "stdout should be available when PIPE is specified"
    )

    lines = _read_lines(process.stdout, cancel_event)
    try:
        async for line in lines:
            if line is None:
                process.terminate()
                await process.wait()
                yield JobEvent(type="log", job_id=job_id, data="\nStep cancelled.\n")
                yield JobEvent(
                    type="step_complete",
                    job_id=job_id,
                    data=step.display_name,
                    success=False,
                    exit_code=process.returncode,
                )
                return
            yield JobEvent(type="log", job_id=job_id, data=line.decode(errors="replace"))

        await process.wait()
        yield JobEvent(
            type="step_complete",
            job_id=job_id,
            data=step.display_name,
            success=process.returncode == 0,
            exit_code=process.returncode,
        )
    finally:
        # Timeout, consumer went away, or an unexpected error
        await lines.aclose()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            await process.wait()


def build_step_env(job: JobSpec, step: Step, workspace: Path) -> dict[str, str]:
    """Environment of a step: host env, then job env, then step env."""
    env = dict(os.environ)
    env["CI"] = "true"
    env["CI_GATE_WORKSPACE"] = str(workspace)
    env.update(job.env)
    env.update(step.env)
    return env


async def _start_services(
    job: JobSpec, run_id: str, container_manager: ContainerManager, handles: list[ServiceHandle]
) -> None:
    for service in job.services:
        handles.append(await container_manager.start_service(run_id, job.id, service))
    for handle in handles:
        await container_manager.wait_until_ready(handle)


async def run_job_streaming(
    job: JobSpec,
    source: Path,
    container_manager: ContainerManager,
    run_id: str,
    cancel_event: asyncio.Event | None = None,
) -> AsyncGenerator[JobEvent, None]:
    """
    Run one job instance from workspace creation to teardown.

    Services are started and must be ready before the first step runs. Steps
    run in order; the first failing step fails the job and the remaining
    steps are skipped. Services and the workspace are always torn down.

    Yields:
        JobEvents, ending with a "complete" event carrying the job outcome
    """
    workspace = Path(tempfile.mkdtemp(prefix=f"ci_gate_{run_id}_{job.id}_"))
    handles: list[ServiceHandle] = []
    failure_kind = FailureKind.for_check(job.check)

    try:
        if job.services:
            try:
                await _start_services(job, run_id, container_manager, handles)
            except (ServiceUnavailableError, ContainerError) as e:
                logger.error(f"Job {job.id} of run {run_id}: {e}")
                yield JobEvent(type="log", job_id=job.id, data=f"Error: {e}\n")
                for handle in handles:
                    async for line in container_manager.stream_logs(handle.name, follow=False):
                        yield JobEvent(type="log", job_id=job.id, data=f"[{handle.service.name}] {line}")
                yield JobEvent(
                    type="complete",
                    job_id=job.id,
                    success=False,
                    failure_kind=FailureKind.ENVIRONMENT_UNAVAILABLE.value,
                )
                return
            yield JobEvent(
                type="log",
                job_id=job.id,
                data=f"Services ready: {', '.join(s.name for s in job.services)}\n",
            )

        for step in job.steps:
            yield JobEvent(type="step", job_id=job.id, data=step.display_name)

            if step.uses:
                success, lines = run_action(step, source, workspace)
                for line in lines:
                    yield JobEvent(type="log", job_id=job.id, data=line)
                yield JobEvent(
                    type="step_complete",
                    job_id=job.id,
                    data=step.display_name,
                    success=success,
                )
                if not success:
                    yield JobEvent(
                        type="complete",
                        job_id=job.id,
                        success=False,
                        failure_kind=FailureKind.ENVIRONMENT_UNAVAILABLE.value,
                    )
                    return
                continue

            env = build_step_env(job, step, workspace)
            step_result: JobEvent | None = None
            step_events = run_step_streaming(step, env, workspace, job.id, cancel_event)
            try:
                async for event in step_events:
                    if event.type == "step_complete":
                        step_result = event
                    yield event
            finally:
                await step_events.aclose()

            if step_result is None or not step_result.success:
                exit_code = step_result.exit_code if step_result else None
                logger.info(
                    f"Job {job.id} of run {run_id}: step '{step.display_name}' "
                    f"failed with exit code {exit_code}"
                )
                yield JobEvent(
                    type="complete",
                    job_id=job.id,
                    success=False,
                    failure_kind=failure_kind.value,
                    exit_code=exit_code,
                )
                return

        yield JobEvent(type="complete", job_id=job.id, success=True, exit_code=0)

    finally:
        for handle in handles:
            await container_manager.remove_service(handle)
        shutil.rmtree(workspace, ignore_errors=True)
