import asyncio
import json
import logging
import os
import tempfile
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from gate_common.models import GateRun, TriggerEvent, Workflow
from gate_common.repository import GateRunRepository
from gate_common.workflow import SUPPORTED_EVENTS, code_quality_workflow, load_workflow
from gate_persistence.sqlite_repository import SQLiteGateRunRepository

logger = logging.getLogger(__name__)

# Global instances (initialized at startup)
repository: GateRunRepository | None = None
workflow: Workflow | None = None


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - GATE_DB_PATH: Custom database path (useful for testing)
    """
    return os.environ.get("GATE_DB_PATH", "ci_gate.db")


def get_workflow_path() -> str | None:
    """
    Get the workflow file from environment.

    Environment variables:
    - GATE_WORKFLOW: Workflow YAML (built-in code quality gate when unset)
    """
    return os.environ.get("GATE_WORKFLOW") or None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Connect to database and load the workflow used for trigger matching
    - Shutdown: Close database connections

    Note: The gate controller must be running separately to execute runs.
    """
    global repository, workflow

    repository = SQLiteGateRunRepository(get_database_path())
    await repository.initialize()

    workflow_path = get_workflow_path()
    workflow = load_workflow(workflow_path) if workflow_path else code_quality_workflow()
    logger.info(f"Serving triggers for workflow '{workflow.name}'")

    yield

    if repository:
        await repository.close()


app = FastAPI(lifespan=lifespan)


def get_repository() -> GateRunRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


def get_workflow() -> Workflow:
    """
    Get the workflow used for trigger matching.

    Raises:
        RuntimeError: If the workflow is not loaded
    """
    if workflow is None:
        raise RuntimeError("Workflow not loaded")
    return workflow


# SSE comment line; clients skip it, it only keeps idle connections alive
KEEPALIVE = ": keepalive\n\n"


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def stream_run_events(
    run_id: str,
    repo: GateRunRepository,
    request: Request | None = None,
    from_beginning: bool = True,
    poll_interval: float = 0.5,
    keepalive_interval: float = 15.0,
) -> AsyncGenerator[str, None]:
    """
    Stream a run's events as SSE, following until the run is terminal.

    Args:
        run_id: UUID of the run to stream
        repo: GateRunRepository instance for database access
        request: Optional FastAPI request to check for client disconnection
        from_beginning: If True, replay stored events first. If False, only
                        stream events recorded from now on.
        poll_interval: Seconds between database polls
        keepalive_interval: Seconds of silence before a keepalive comment is
                            sent, so jobs with quiet steps do not hit the
                            client's read timeout

    Yields:
        SSE-formatted event strings, ending with a "gate" event carrying the
        run's final decision
    """
    run = await repo.get_run(run_id)
    if run is None:
        yield _sse({"type": "log", "data": "Run not found.\n"})
        yield _sse({"type": "gate", "success": False})
        return

    index = 0 if from_beginning else len(run.events)
    last_sent = time.monotonic()

    while True:
        events = await repo.get_events(run_id, from_index=index)
        for event in events:
            yield _sse(event.to_dict())
        index += len(events)

        if events:
            last_sent = time.monotonic()
        elif time.monotonic() - last_sent >= keepalive_interval:
            yield KEEPALIVE
            last_sent = time.monotonic()

        if request and await request.is_disconnected():
            return

        run = await repo.get_run(run_id)
        if run is None:
            yield _sse({"type": "log", "data": "Run disappeared.\n"})
            yield _sse({"type": "gate", "success": False})
            return

        if run.is_terminal:
            # Drain events written between the last poll and completion
            for event in await repo.get_events(run_id, from_index=index):
                yield _sse(event.to_dict())
            yield _sse(
                {
                    "type": "gate",
                    "status": run.status,
                    "success": bool(run.success),
                    "jobs": [job.to_dict() for job in run.jobs],
                }
            )
            return

        await asyncio.sleep(poll_interval)


@app.post("/events")
async def submit_event(
    event: str = Form(...),
    ref: str = Form(...),
    sha: str | None = Form(None),
    file: UploadFile = File(...),
    repo: GateRunRepository = Depends(get_repository),
    wf: Workflow = Depends(get_workflow),
) -> dict[str, Any]:
    """
    Receive a push or pull request with the zipped change under test.

    Events that do not match the workflow triggers are acknowledged without
    scheduling anything. Matching events create a queued run that the
    controller picks up.

    Raises:
        HTTPException: 400 for unsupported event types
    """
    if event not in SUPPORTED_EVENTS:
        raise HTTPException(status_code=400, detail=f"Unsupported event: {event}")

    trigger_event = TriggerEvent(event=event, ref=ref, sha=sha)
    if not wf.matches(trigger_event):
        logger.info(f"Ignoring {event} on {ref}: no matching trigger")
        return {"triggered": False, "run_id": None}

    run_id = str(uuid.uuid4())
    zip_data = await file.read()

    # Stash the change until the controller picks the run up
    fd, zip_file_path = tempfile.mkstemp(suffix=".zip", prefix=f"ci_gate_{run_id}_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(zip_data)
    except Exception:
        os.unlink(zip_file_path)
        raise

    run = GateRun(
        id=run_id,
        event=event,
        ref=trigger_event.branch,
        sha=sha,
        status="queued",
        zip_file_path=zip_file_path,
    )
    await repo.create_run(run)
    logger.info(f"Queued run {run_id} for {event} on {trigger_event.branch}")

    return {
        "triggered": True,
        "run_id": run_id,
        "jobs": list(wf.jobs),
    }


@app.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: str,
    request: Request,
    from_beginning: bool = False,
    repo: GateRunRepository = Depends(get_repository),
) -> StreamingResponse:
    """
    Stream a run's job events via Server-Sent Events (SSE).

    By default (from_beginning=False), only streams new events. With
    from_beginning=True, replays all events from the start.

    Raises:
        HTTPException: 404 if run_id not found
    """
    run = await repo.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    return StreamingResponse(
        stream_run_events(run_id, repo, request, from_beginning=from_beginning),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/runs")
async def list_runs(
    ref: str | None = None,
    repo: GateRunRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """
    List gate runs, newest first.

    Args:
        ref: Only list runs for this branch
    """
    runs = await repo.list_runs(ref=ref)
    return [run.to_summary_dict() for run in runs]


@app.get("/runs/{run_id}")
async def get_run_status(
    run_id: str,
    repo: GateRunRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Get a run's status, gate decision and per-job results (non-streaming).

    Raises:
        HTTPException: 404 if run_id not found
    """
    run = await repo.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_dict()
