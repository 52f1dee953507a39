"""
Container manager for service dependencies.

This module provides an abstraction over Docker operations for the auxiliary
containers a job declares (for example a postgres database). Service
containers are labelled with the gate run that owns them, published on fixed
host ports, and removed unconditionally when the job ends.
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from gate_common.errors import ContainerError, ServiceUnavailableError
from gate_common.models import ServiceDependency

logger = logging.getLogger(__name__)

RUN_LABEL = "ci-gate.run"
JOB_LABEL = "ci-gate.job"


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str
    status: Literal[
        "created", "running", "exited", "paused", "restarting", "removing", "dead"
    ]
    exit_code: int | None
    started_at: datetime | None
    finished_at: datetime | None
    run_id: str | None = None  # Owning gate run, from the container label


@dataclass
class ServiceHandle:
    """A started service container."""

    container_id: str
    name: str
    service: ServiceDependency


def _parse_docker_time(value: str | None) -> datetime | None:
    # Docker reports "0001-01-01T00:00:00Z" for containers that never ran
    if not value or value.startswith("0001-"):
        return None
    try:
        # Docker uses nanosecond precision, fromisoformat accepts microseconds
        head, dot, tail = value.replace("Z", "").partition(".")
        if dot:
            head = f"{head}.{tail[:6]}"
        return datetime.fromisoformat(head + "+00:00")
    except ValueError:
        return None


class ContainerManager:
    """
    Manages Docker containers for job service dependencies.

    Containers are named "{prefix}{run_id}-{job_id}-{service}" so several
    gate instances can share one Docker daemon without interference.
    """

    def __init__(
        self,
        container_name_prefix: str = "ci-gate-",
        ready_timeout: float = 120.0,
    ):
        """
        Initialize the container manager.

        Args:
            container_name_prefix: Prefix for all service container names.
            ready_timeout: Upper bound in seconds for a service to become ready,
                           regardless of its health interval and retries.
        """
        self.container_name_prefix = container_name_prefix
        self.ready_timeout = ready_timeout

    def _get_container_name(self, run_id: str, job_id: str, service_name: str) -> str:
        return f"{self.container_name_prefix}{run_id}-{job_id}-{service_name}"

    async def _docker(self, *args: str) -> str:
        """
        Run a docker command and return its stdout.

        Raises:
            ContainerError: If docker exits with a non-zero code
        """
        cmd = ["docker", *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ContainerError(cmd, 127, f"docker not found: {e}") from e
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise ContainerError(cmd, process.returncode or 1, stderr.decode())
        return stdout.decode()

    async def start_service(
        self, run_id: str, job_id: str, service: ServiceDependency
    ) -> ServiceHandle:
        """
        Start a detached service container.

        Args:
            run_id: Gate run owning the container
            job_id: Job the service belongs to
            service: Service dependency to provision

        Returns:
            Handle for readiness checks and teardown

        Raises:
            ContainerError: If the container cannot be started
        """
        name = self._get_container_name(run_id, job_id, service.name)

        args = [
            "run",
            "--detach",
            "--name",
            name,
            "--label",
            f"{RUN_LABEL}={run_id}",
            "--label",
            f"{JOB_LABEL}={job_id}",
        ]
        for key, value in service.env.items():
            args.extend(["--env", f"{key}={value}"])
        for mapping in service.ports:
            args.extend(["--publish", str(mapping)])
        args.append(service.image)

        logger.info(f"Starting service {service.name} ({service.image}) as {name}")
        try:
            container_id = (await self._docker(*args)).strip()
        except ContainerError:
            # docker run may fail after creating the container
            await self.cleanup_container(name)
            raise
        return ServiceHandle(container_id=container_id, name=name, service=service)

    async def exec_in_container(self, name: str, command: str) -> int:
        """Run a shell command inside a container and return its exit code."""
        process = await asyncio.create_subprocess_exec(
            "docker",
            "exec",
            name,
            "sh",
            "-c",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        await process.communicate()
        return process.returncode if process.returncode is not None else 1

    async def wait_until_ready(
        self, handle: ServiceHandle, timeout: float | None = None
    ) -> None:
        """
        Block until the service accepts connections.

        The readiness command runs up to `health_retries + 1` times,
        `health_interval` seconds apart. Services without a readiness command
        are ready once their container is running.

        Args:
            handle: Service started by start_service
            timeout: Overall bound in seconds (default: ready_timeout)

        Raises:
            ServiceUnavailableError: If the container exits, or never becomes
                                     ready within the retries or the timeout
        """
        timeout = timeout or self.ready_timeout
        try:
            await asyncio.wait_for(self._poll_ready(handle), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ServiceUnavailableError(
                handle.service.name, f"not ready after {timeout}s"
            ) from e

    async def _poll_ready(self, handle: ServiceHandle) -> None:
        service = handle.service
        command = service.readiness_command()
        attempts = service.health_retries + 1

        for attempt in range(1, attempts + 1):
            info = await self.get_container_info(handle.name)
            if info is None:
                raise ServiceUnavailableError(service.name, "container disappeared")
            if info.status in ("exited", "dead"):
                raise ServiceUnavailableError(
                    service.name, f"container exited with code {info.exit_code}"
                )

            if info.status == "running":
                if command is None:
                    return
                if await self.exec_in_container(handle.name, command) == 0:
                    logger.info(f"Service {service.name} ready after {attempt} check(s)")
                    return

            logger.debug(
                f"Service {service.name} not ready (attempt {attempt}/{attempts})"
            )
            if attempt < attempts:
                await asyncio.sleep(service.health_interval)

        raise ServiceUnavailableError(
            service.name, f"health check failed {attempts} time(s)"
        )

    async def get_container_info(self, name: str) -> ContainerInfo | None:
        """
        Get information about a container by name.

        Returns:
            ContainerInfo if container exists, None otherwise
        """
        try:
            stdout = await self._docker("inspect", name)
        except ContainerError:
            # Container doesn't exist
            return None

        try:
            data = json.loads(stdout)
            if not data:
                return None

            container = data[0]
            state = container["State"]
            labels = (container.get("Config") or {}).get("Labels") or {}

            return ContainerInfo(
                container_id=container["Id"],
                name=container.get("Name", name).lstrip("/"),
                status=state["Status"].lower(),
                exit_code=state.get("ExitCode"),
                started_at=_parse_docker_time(state.get("StartedAt")),
                finished_at=_parse_docker_time(state.get("FinishedAt")),
                run_id=labels.get(RUN_LABEL),
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise ContainerError(["docker", "inspect", name], 0, f"unparseable output: {e}") from e

    async def stream_logs(
        self, name: str, follow: bool = True
    ) -> AsyncGenerator[str, None]:
        """
        Stream logs from a container.

        Args:
            name: Docker container ID or name
            follow: If True, stream logs continuously. If False, return existing logs.

        Yields:
            Log lines as strings
        """
        args = ["docker", "logs"]
        if follow:
            args.append("--follow")
        args.append(name)

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        assert process.stdout is not None

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace")
        finally:
            # Clean up process if still running
            if process.returncode is None:
                process.terminate()
                await process.wait()

    async def remove_container(self, name: str, force: bool = False) -> None:
        """
        Remove a container.

        Raises:
            ContainerError: If removal fails for any reason other than the
                            container already being gone
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(name)

        try:
            await self._docker(*args)
        except ContainerError as e:
            if "No such container" not in e.stderr:
                raise

    async def list_gate_containers(self, run_id: str | None = None) -> list[ContainerInfo]:
        """
        List containers created by this gate (running and stopped).

        Args:
            run_id: Only list containers owned by this run

        Returns:
            ContainerInfo for every labelled container whose name has our prefix
        """
        label = f"{RUN_LABEL}={run_id}" if run_id else RUN_LABEL
        stdout = await self._docker(
            "ps", "--all", "--filter", f"label={label}", "--format", "{{.Names}}"
        )

        containers = []
        for name in stdout.strip().split("\n"):
            if not name or not name.startswith(self.container_name_prefix):
                continue
            info = await self.get_container_info(name)
            if info:
                containers.append(info)
        return containers

    async def cleanup_container(self, name: str) -> None:
        """
        Force-remove a container.

        This is a best-effort operation that won't raise exceptions.
        """
        try:
            await self.remove_container(name, force=True)
        except ContainerError as e:
            logger.warning(f"Failed to remove container {name}: {e}")

    async def remove_service(self, handle: ServiceHandle) -> None:
        """Tear down a service container; never raises."""
        logger.info(f"Removing service {handle.service.name} ({handle.name})")
        await self.cleanup_container(handle.name)

    async def cleanup_run(self, run_id: str) -> None:
        """Best-effort removal of every container owned by a run."""
        try:
            containers = await self.list_gate_containers(run_id)
        except ContainerError as e:
            logger.warning(f"Failed to list containers of run {run_id}: {e}")
            return

        for container in containers:
            await self.cleanup_container(container.name)
