"""
Error taxonomy for the verification gate.

Every failed job is classified with a FailureKind. Exceptions raised while
provisioning or running a job are converted into failed job results by the
executor; nothing here is retried.
"""

from enum import Enum


class FailureKind(str, Enum):
    """Why a job failed."""

    LINT_VIOLATION = "lint_violation"
    FORMAT_MISMATCH = "format_mismatch"
    TEST_FAILURE = "test_failure"
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"
    TIMEOUT = "timeout"
    CHECK_FAILURE = "check_failure"

    @classmethod
    def for_check(cls, check: str) -> "FailureKind":
        """
        Map a job's check category to the failure kind it reports.

        Args:
            check: One of "lint", "format", "test" or "check"

        Returns:
            The matching FailureKind (CHECK_FAILURE for unknown checks)
        """
        return {
            "lint": cls.LINT_VIOLATION,
            "format": cls.FORMAT_MISMATCH,
            "test": cls.TEST_FAILURE,
        }.get(check, cls.CHECK_FAILURE)


class GateError(Exception):
    """Base class for gate errors."""


class WorkflowError(GateError):
    """The workflow definition is malformed."""


class ServiceUnavailableError(GateError):
    """A service dependency never became ready."""

    def __init__(self, service: str, reason: str):
        super().__init__(f"Service '{service}' unavailable: {reason}")
        self.service = service
        self.reason = reason


class StepFailedError(GateError):
    """A step exited with a non-zero code."""

    def __init__(self, step: str, exit_code: int):
        super().__init__(f"Step '{step}' failed with exit code {exit_code}")
        self.step = step
        self.exit_code = exit_code


class ContainerError(GateError):
    """
    A docker command failed.

    Attributes:
        cmd: Command in list form.
        return_code: Return code of the docker process.
        stderr: Content of stderr of the docker process.
    """

    def __init__(self, cmd: list[str], return_code: int, stderr: str):
        super().__init__(
            f"[{' '.join(cmd)}] failed with return code {return_code!r}: {stderr.strip()}"
        )
        self.cmd = cmd
        self.return_code = return_code
        self.stderr = stderr
