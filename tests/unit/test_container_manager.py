"""
Unit tests for ContainerManager.

Docker is never invoked: subprocess creation and container inspection are
mocked so the tests run without a Docker daemon.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gate_common.errors import ContainerError, ServiceUnavailableError
from gate_common.models import PortMapping, ServiceDependency
from gate_controller.container_manager import (
    ContainerInfo,
    ContainerManager,
    ServiceHandle,
    _parse_docker_time,
)


def make_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    return process


def make_info(status: str, exit_code: int | None = 0) -> ContainerInfo:
    return ContainerInfo(
        container_id="abc",
        name="ci-gate-run-test-postgres",
        status=status,
        exit_code=exit_code,
        started_at=None,
        finished_at=None,
    )


def postgres_service(**overrides) -> ServiceDependency:
    service = ServiceDependency(
        name="postgres",
        image="postgres:14",
        env={"POSTGRES_USER": "postgres", "POSTGRES_PASSWORD": "password"},
        ports=[PortMapping(host=5432, container=5432)],
        health_interval=0,
        health_retries=2,
    )
    for key, value in overrides.items():
        setattr(service, key, value)
    return service


class TestContainerManager:
    """Test suite for ContainerManager class."""

    @pytest.fixture
    def container_manager(self):
        """Create a ContainerManager instance for testing."""
        return ContainerManager(container_name_prefix="test-")

    def test_container_name(self, container_manager):
        """Test that names carry the prefix, run, job and service."""
        name = container_manager._get_container_name("run-1", "test", "postgres")
        assert name == "test-run-1-test-postgres"

    @pytest.mark.asyncio
    async def test_start_service_arguments(self, container_manager):
        """Test the docker run invocation for a service."""
        process = make_process(stdout=b"c0ffee\n")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            handle = await container_manager.start_service("run-1", "test", postgres_service())

        args = mock_exec.call_args[0]
        assert args[:3] == ("docker", "run", "--detach")
        assert "test-run-1-test-postgres" in args
        assert "ci-gate.run=run-1" in args
        assert "ci-gate.job=test" in args
        assert "POSTGRES_USER=postgres" in args
        assert args[args.index("--publish") + 1] == "5432:5432"
        assert args[-1] == "postgres:14"

        assert handle.container_id == "c0ffee"
        assert handle.name == "test-run-1-test-postgres"

    @pytest.mark.asyncio
    async def test_start_service_failure_raises(self, container_manager):
        """Test that a failing docker run raises ContainerError."""
        process = make_process(stderr=b"port is already allocated", returncode=125)

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            with pytest.raises(ContainerError) as exc_info:
                await container_manager.start_service("run-1", "test", postgres_service())

        assert exc_info.value.return_code == 125
        assert "port is already allocated" in str(exc_info.value)
        # The container docker created before failing is removed
        assert mock_exec.call_args[0] == ("docker", "rm", "--force", "test-run-1-test-postgres")

    @pytest.mark.asyncio
    async def test_missing_docker_binary_raises_container_error(self, container_manager):
        """Test that a missing docker CLI surfaces as ContainerError."""
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("docker")):
            with pytest.raises(ContainerError) as exc_info:
                await container_manager._docker("ps")

        assert exc_info.value.return_code == 127

    @pytest.mark.asyncio
    async def test_get_container_info(self, container_manager):
        """Test parsing docker inspect output."""
        inspect = [
            {
                "Id": "c0ffee",
                "Name": "/test-run-1-test-postgres",
                "State": {
                    "Status": "running",
                    "ExitCode": 0,
                    "StartedAt": "2024-05-01T10:00:00.123456789Z",
                    "FinishedAt": "0001-01-01T00:00:00Z",
                },
                "Config": {"Labels": {"ci-gate.run": "run-1"}},
            }
        ]
        process = make_process(stdout=json.dumps(inspect).encode())

        with patch("asyncio.create_subprocess_exec", return_value=process):
            info = await container_manager.get_container_info("test-run-1-test-postgres")

        assert info.container_id == "c0ffee"
        assert info.name == "test-run-1-test-postgres"
        assert info.status == "running"
        assert info.run_id == "run-1"
        assert info.started_at.microsecond == 123456
        assert info.finished_at is None

    @pytest.mark.asyncio
    async def test_get_container_info_nonexistent(self, container_manager):
        """Test getting info for a non-existent container."""
        process = make_process(stderr=b"Error: No such object", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await container_manager.get_container_info("missing") is None

    @pytest.mark.asyncio
    async def test_remove_container_ignores_missing(self, container_manager):
        """Test that removing an already-removed container is not an error."""
        process = make_process(stderr=b"Error: No such container: x", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            await container_manager.remove_container("x", force=True)

    @pytest.mark.asyncio
    async def test_cleanup_container_never_raises(self, container_manager):
        """Test that cleanup is best-effort."""
        process = make_process(stderr=b"daemon unavailable", returncode=1)

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            await container_manager.cleanup_container("x")

        assert mock_exec.call_args[0] == ("docker", "rm", "--force", "x")

    @pytest.mark.asyncio
    async def test_list_gate_containers_filters_prefix(self, container_manager):
        """Test that only containers with our prefix are listed."""
        ps = make_process(stdout=b"test-run-1-test-postgres\nother-container\n\n")

        with (
            patch("asyncio.create_subprocess_exec", return_value=ps) as mock_exec,
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("running")),
            ) as mock_info,
        ):
            containers = await container_manager.list_gate_containers("run-1")

        assert "label=ci-gate.run=run-1" in mock_exec.call_args[0]
        mock_info.assert_awaited_once_with("test-run-1-test-postgres")
        assert len(containers) == 1

    @pytest.mark.asyncio
    async def test_cleanup_run_removes_all_containers(self, container_manager):
        """Test that every container of a run is removed."""
        infos = [make_info("running"), make_info("exited")]
        infos[1].name = "test-run-1-other-redis"

        with (
            patch.object(
                container_manager, "list_gate_containers", AsyncMock(return_value=infos)
            ),
            patch.object(container_manager, "cleanup_container", AsyncMock()) as cleanup,
        ):
            await container_manager.cleanup_run("run-1")

        assert [c.args[0] for c in cleanup.await_args_list] == [
            "ci-gate-run-test-postgres",
            "test-run-1-other-redis",
        ]


class TestServiceReadiness:
    """Test suite for the readiness barrier."""

    @pytest.fixture
    def container_manager(self):
        return ContainerManager(ready_timeout=5.0)

    def make_handle(self, **overrides) -> ServiceHandle:
        return ServiceHandle(
            container_id="abc",
            name="ci-gate-run-test-postgres",
            service=postgres_service(**overrides),
        )

    @pytest.mark.asyncio
    async def test_ready_after_retries(self, container_manager):
        """Test that the health command is retried until it succeeds."""
        with (
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("running")),
            ),
            patch.object(
                container_manager, "exec_in_container", AsyncMock(side_effect=[2, 2, 0])
            ) as mock_exec,
        ):
            await container_manager.wait_until_ready(self.make_handle())

        assert mock_exec.await_count == 3
        mock_exec.assert_awaited_with(
            "ci-gate-run-test-postgres", "pg_isready -h localhost -p 5432 -U postgres"
        )

    @pytest.mark.asyncio
    async def test_never_ready_raises(self, container_manager):
        """Test that exhausting the retries raises ServiceUnavailableError."""
        with (
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("running")),
            ),
            patch.object(
                container_manager, "exec_in_container", AsyncMock(return_value=1)
            ) as mock_exec,
        ):
            with pytest.raises(ServiceUnavailableError) as exc_info:
                await container_manager.wait_until_ready(self.make_handle())

        # health_retries=2 allows three checks
        assert mock_exec.await_count == 3
        assert exc_info.value.service == "postgres"

    @pytest.mark.asyncio
    async def test_exited_container_raises_immediately(self, container_manager):
        """Test that a crashed service is reported without further checks."""
        with (
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("exited", exit_code=1)),
            ),
            patch.object(container_manager, "exec_in_container", AsyncMock()) as mock_exec,
        ):
            with pytest.raises(ServiceUnavailableError, match="exited with code 1"):
                await container_manager.wait_until_ready(self.make_handle())

        mock_exec.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_container_raises(self, container_manager):
        with patch.object(
            container_manager, "get_container_info", AsyncMock(return_value=None)
        ):
            with pytest.raises(ServiceUnavailableError, match="disappeared"):
                await container_manager.wait_until_ready(self.make_handle())

    @pytest.mark.asyncio
    async def test_service_without_health_command(self, container_manager):
        """Test that a running container without a health command is ready."""
        handle = ServiceHandle(
            container_id="abc",
            name="ci-gate-run-test-redis",
            service=ServiceDependency(name="redis", image="redis:7", health_interval=0),
        )
        with (
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("running")),
            ),
            patch.object(container_manager, "exec_in_container", AsyncMock()) as mock_exec,
        ):
            await container_manager.wait_until_ready(handle)

        mock_exec.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ready_timeout_bounds_the_wait(self):
        """Test that the overall timeout wins over a long health interval."""
        container_manager = ContainerManager(ready_timeout=0.05)
        with (
            patch.object(
                container_manager,
                "get_container_info",
                AsyncMock(return_value=make_info("running")),
            ),
            patch.object(container_manager, "exec_in_container", AsyncMock(return_value=1)),
        ):
            with pytest.raises(ServiceUnavailableError, match="not ready after"):
                await container_manager.wait_until_ready(
                    self.make_handle(health_interval=10.0)
                )


class TestParseDockerTime:
    """Test suite for docker timestamp parsing."""

    def test_zero_time_is_none(self):
        assert _parse_docker_time("0001-01-01T00:00:00Z") is None

    def test_empty_is_none(self):
        assert _parse_docker_time(None) is None
        assert _parse_docker_time("") is None

    def test_without_fraction(self):
        parsed = _parse_docker_time("2024-05-01T10:00:00Z")
        assert parsed.year == 2024
        assert parsed.utcoffset().total_seconds() == 0


class TestRemoveService:
    """Test suite for service teardown."""

    @pytest.mark.asyncio
    async def test_remove_service_force_removes_container(self):
        container_manager = ContainerManager()
        handle = ServiceHandle(
            container_id="abc", name="ci-gate-run-1-test-postgres", service=postgres_service()
        )
        process = make_process()

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            await container_manager.remove_service(handle)

        assert mock_exec.call_args[0] == ("docker", "rm", "--force", "ci-gate-run-1-test-postgres")
