"""
Data models for the verification gate.

Workflow models (Step, ServiceDependency, JobSpec, Trigger, Workflow) are the
declarative description of the gate. Run models (JobEvent, JobResult,
GateRun) record what happened when a trigger event was evaluated, independent
of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

DEFAULT_TIMEOUT_MINUTES = 360
POSTGRES_PORT = 5432


@dataclass(frozen=True)
class PortMapping:
    """A container port published on the host."""

    host: int
    container: int

    def __str__(self) -> str:
        return f"{self.host}:{self.container}"


@dataclass
class Step:
    """
    A single step inside a job.

    Exactly one of `run` (a shell command) or `uses` (a built-in action
    reference such as "actions/checkout@v4") is set.
    """

    name: str
    run: str | None = None
    uses: str | None = None
    with_: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.run or self.uses or "step"


@dataclass
class ServiceDependency:
    """
    An auxiliary container provisioned for the duration of one job.

    The health command is executed inside the container until it succeeds;
    dependent steps never start before that.
    """

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)
    health_cmd: str | None = None
    health_interval: float = 10.0
    health_retries: int = 5

    @property
    def is_postgres(self) -> bool:
        return self.image.split(":", 1)[0].split("/")[-1] == "postgres"

    def readiness_command(self) -> str | None:
        """
        Return the health command, defaulting to pg_isready for postgres.

        The postgres check goes over TCP: the image's init server listens only
        on the Unix socket and must not count as ready.
        """
        if self.health_cmd:
            return self.health_cmd
        if self.is_postgres:
            user = self.env.get("POSTGRES_USER", "postgres")
            port = self.env.get("PGPORT", POSTGRES_PORT)
            return f"pg_isready -h localhost -p {port} -U {user}"
        return None


@dataclass
class JobSpec:
    """
    An independently-scheduled unit of work within the gate.

    `check` is the failure category this job guards ("lint", "format",
    "test" or "check").
    """

    id: str
    name: str
    steps: list[Step]
    runs_on: str = "ubuntu-latest"
    env: dict[str, str] = field(default_factory=dict)
    services: list[ServiceDependency] = field(default_factory=list)
    check: str = "check"
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES

    def commands(self) -> list[str]:
        """Shell commands run by this job, in order."""
        return [step.run for step in self.steps if step.run]


@dataclass(frozen=True)
class TriggerEvent:
    """A source change that may schedule the gate."""

    event: str  # "push" or "pull_request"
    ref: str  # Branch name, "refs/heads/" prefix allowed
    sha: str | None = None

    @property
    def branch(self) -> str:
        return self.ref.removeprefix("refs/heads/")


@dataclass
class Trigger:
    """
    An event type the workflow reacts to.

    `branches` filters push events; None means every branch.
    """

    event: str
    branches: list[str] | None = None

    def matches(self, trigger_event: TriggerEvent) -> bool:
        if trigger_event.event != self.event:
            return False
        if self.branches is None:
            return True
        return trigger_event.branch in self.branches


@dataclass
class Workflow:
    """A named set of triggers and independent jobs."""

    name: str
    triggers: list[Trigger]
    jobs: dict[str, JobSpec]

    def matches(self, event: TriggerEvent) -> bool:
        return any(trigger.matches(event) for trigger in self.triggers)

    def jobs_for(self, event: TriggerEvent) -> list[JobSpec]:
        """Jobs scheduled for an event: all of them, or none."""
        if not self.matches(event):
            return []
        return list(self.jobs.values())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobEvent:
    """
    Represents a single event in a job's lifecycle.

    Events are emitted during job execution (step boundaries, log lines,
    completion).
    """

    type: str  # "step", "log", "step_complete" or "complete"
    job_id: str | None = None
    data: str | None = None  # Log line or step name
    success: bool | None = None  # Result for "step_complete"/"complete"
    failure_kind: str | None = None  # Set on failed "complete" events
    exit_code: int | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {"type": self.type}
        if self.job_id is not None:
            result["job_id"] = self.job_id
        if self.data is not None:
            result["data"] = self.data
        if self.success is not None:
            result["success"] = self.success
        if self.failure_kind is not None:
            result["failure_kind"] = self.failure_kind
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        return result

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], timestamp: datetime | None = None
    ) -> "JobEvent":
        """Create event from dictionary format."""
        return cls(
            type=data["type"],
            job_id=data.get("job_id"),
            data=data.get("data"),
            success=data.get("success"),
            failure_kind=data.get("failure_kind"),
            exit_code=data.get("exit_code"),
            timestamp=timestamp,
        )


@dataclass
class JobResult:
    """
    Outcome of one job instance.

    Jobs progress through states: pending -> running -> passed | failed
    """

    job_id: str
    name: str
    status: str = "pending"
    success: bool | None = None
    failure_kind: str | None = None
    exit_code: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "status": self.status,
            "success": self.success,
            "failure_kind": self.failure_kind,
            "exit_code": self.exit_code,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
        }


@dataclass
class GateResult:
    """Aggregate decision for one evaluated trigger event."""

    run_id: str
    triggered: bool
    jobs: list[JobResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Logical AND of all job results. Untriggered gates do not block."""
        return all(job.success is True for job in self.jobs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "triggered": self.triggered,
            "passed": self.passed,
            "jobs": [job.to_dict() for job in self.jobs],
        }


@dataclass
class GateRun:
    """
    A persisted gate evaluation for one trigger event.

    Runs progress through states: queued -> running -> completed
    Additional state: failed (the run itself could not be executed)
    """

    id: str
    event: str
    ref: str
    status: str  # "queued", "running", "completed" or "failed"
    sha: str | None = None
    success: bool | None = None
    jobs: list[JobResult] = field(default_factory=list)
    events: list[JobEvent] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None
    zip_file_path: str | None = None  # Stashed change for queued runs
    created_at: datetime | None = None

    @property
    def trigger_event(self) -> TriggerEvent:
        return TriggerEvent(event=self.event, ref=self.ref, sha=self.sha)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def to_dict(self) -> dict[str, Any]:
        """Convert run to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "event": self.event,
            "ref": self.ref,
            "sha": self.sha,
            "status": self.status,
            "success": self.success,
            "jobs": [job.to_dict() for job in self.jobs],
            "created_at": _iso(self.created_at),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert run to summary format (without jobs, for listings)."""
        return {
            "run_id": self.id,
            "event": self.event,
            "ref": self.ref,
            "status": self.status,
            "success": self.success,
            "created_at": _iso(self.created_at),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
        }
