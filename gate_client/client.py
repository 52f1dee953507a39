import io
import json
import zipfile
from pathlib import Path
from typing import Any, Generator

import requests

DEFAULT_SERVER_URL = "http://localhost:8000"

# Same exclusions as the job workspace checkout
EXCLUDED_DIRS = (".git", "__pycache__", "target")


def create_project_zip(project_dir: Path) -> bytes:
    """
    Create a zip file of the project directory.

    Dotfiles such as .rustfmt.toml and .cargo/config.toml are included; only
    VCS metadata and build output are left out.
    """
    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in project_dir.rglob("*"):
            relative = path.relative_to(project_dir)
            if path.is_file() and not any(p in EXCLUDED_DIRS for p in relative.parts):
                zf.write(path, relative)
    return zip_buffer.getvalue()


def submit_change(
    project_dir: Path,
    event: str,
    ref: str,
    sha: str | None = None,
    server_url: str = DEFAULT_SERVER_URL,
) -> dict[str, Any]:
    """
    Submit a push or pull request to the gate server.

    Args:
        project_dir: Path to the project directory to check
        event: "push" or "pull_request"
        ref: Branch the event targets
        sha: Optional commit identifier
        server_url: Base URL of the gate server

    Returns:
        dict with "triggered" (bool) and "run_id" (str or None)

    Raises:
        RuntimeError: If submission fails due to network or server error
    """
    data = {"event": event, "ref": ref}
    if sha:
        data["sha"] = sha

    try:
        response = requests.post(
            f"{server_url}/events",
            data=data,
            files={
                "file": (
                    "project.zip",
                    create_project_zip(project_dir),
                    "application/zip",
                )
            },
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error submitting to gate server: {e}")


def wait_for_run(
    run_id: str, server_url: str = DEFAULT_SERVER_URL, from_beginning: bool = False
) -> Generator[dict, None, None]:
    """
    Wait for a run to finish, streaming its job events via Server-Sent Events.

    Yields:
        dict: Event dictionaries with 'type' and other fields:
            - {"type": "step", "job_id": str, "data": str} - Step started
            - {"type": "log", "job_id": str, "data": str} - Output line
            - {"type": "complete", "job_id": str, "success": bool} - Job finished
            - {"type": "gate", "success": bool, "jobs": [...]} - Gate decision

    By default, only streams new events. Use from_beginning=True to replay all
    events from the start.
    """
    try:
        params = {"from_beginning": from_beginning} if from_beginning else {}
        response = requests.get(
            f"{server_url}/runs/{run_id}/stream",
            params=params,
            stream=True,
            # Read timeout applies between chunks; the server sends keepalives
            timeout=(30, 300),
        )
        response.raise_for_status()

        # Parse SSE format: "data: {...}\n\n"
        for line in response.iter_lines(decode_unicode=True):
            if line and line.startswith("data: "):
                yield json.loads(line[6:])
    except requests.exceptions.RequestException as e:
        yield {"type": "log", "data": f"Error waiting for run: {e}\n"}
        yield {"type": "gate", "success": False}


def list_runs(
    server_url: str = DEFAULT_SERVER_URL, ref: str | None = None
) -> list[dict[str, Any]]:
    """
    List gate runs, newest first.

    Raises:
        RuntimeError: If the request fails
    """
    try:
        params = {"ref": ref} if ref else {}
        response = requests.get(f"{server_url}/runs", params=params, timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error listing runs: {e}")


def get_run(run_id: str, server_url: str = DEFAULT_SERVER_URL) -> dict[str, Any]:
    """
    Get a run's status and per-job results.

    Raises:
        RuntimeError: If the run does not exist or the request fails
    """
    try:
        response = requests.get(f"{server_url}/runs/{run_id}", timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error fetching run {run_id}: {e}")
