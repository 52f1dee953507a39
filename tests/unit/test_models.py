"""
Unit tests for gate_common.models and gate_common.errors.

Tests trigger matching, event serialization and the gate decision.
"""

from datetime import UTC, datetime

from gate_common.errors import FailureKind, ServiceUnavailableError, StepFailedError
from gate_common.models import (
    GateResult,
    GateRun,
    JobEvent,
    JobResult,
    JobSpec,
    PortMapping,
    ServiceDependency,
    Step,
    Trigger,
    TriggerEvent,
    Workflow,
)


def make_workflow() -> Workflow:
    jobs = {
        name: JobSpec(id=name, name=name, steps=[Step(name="s", run="true")])
        for name in ("lint", "fmt", "test")
    }
    return Workflow(
        name="wf",
        triggers=[Trigger(event="push", branches=["main"]), Trigger(event="pull_request")],
        jobs=jobs,
    )


class TestTriggerMatching:
    """Test suite for Trigger and Workflow matching."""

    def test_push_to_main_matches(self):
        assert make_workflow().matches(TriggerEvent(event="push", ref="main"))

    def test_push_ref_prefix_is_stripped(self):
        event = TriggerEvent(event="push", ref="refs/heads/main")
        assert event.branch == "main"
        assert make_workflow().matches(event)

    def test_push_to_other_branch_does_not_match(self):
        assert not make_workflow().matches(TriggerEvent(event="push", ref="feature/x"))

    def test_pull_request_is_unfiltered(self):
        workflow = make_workflow()
        for ref in ("main", "feature/x", "release-1.0"):
            assert workflow.matches(TriggerEvent(event="pull_request", ref=ref))

    def test_unknown_event_does_not_match(self):
        assert not make_workflow().matches(TriggerEvent(event="tag", ref="main"))

    def test_jobs_for_returns_all_jobs_or_none(self):
        workflow = make_workflow()

        scheduled = workflow.jobs_for(TriggerEvent(event="push", ref="main"))
        assert [job.id for job in scheduled] == ["lint", "fmt", "test"]

        assert workflow.jobs_for(TriggerEvent(event="push", ref="dev")) == []

    def test_trigger_without_branches_matches_any_push(self):
        trigger = Trigger(event="push")
        assert trigger.matches(TriggerEvent(event="push", ref="anything"))


class TestServiceDependency:
    """Test suite for ServiceDependency readiness commands."""

    def test_postgres_defaults_to_pg_isready(self):
        service = ServiceDependency(
            name="postgres", image="postgres:14", env={"POSTGRES_USER": "admin"}
        )
        assert service.is_postgres
        assert service.readiness_command() == "pg_isready -h localhost -p 5432 -U admin"

    def test_postgres_registry_image_is_detected(self):
        service = ServiceDependency(name="db", image="docker.io/library/postgres:14")
        assert service.readiness_command() == "pg_isready -h localhost -p 5432 -U postgres"

    def test_postgres_check_uses_tcp_listener(self):
        service = ServiceDependency(
            name="postgres", image="postgres:16", env={"PGPORT": "6543"}
        )
        command = service.readiness_command()
        assert "-h localhost" in command
        assert "-p 6543" in command

    def test_explicit_health_cmd_wins(self):
        service = ServiceDependency(
            name="postgres", image="postgres:14", health_cmd="pg_isready -h localhost"
        )
        assert service.readiness_command() == "pg_isready -h localhost"

    def test_other_images_have_no_default(self):
        service = ServiceDependency(name="redis", image="redis:7")
        assert not service.is_postgres
        assert service.readiness_command() is None

    def test_port_mapping_str(self):
        assert str(PortMapping(host=5432, container=5432)) == "5432:5432"


class TestJobEvent:
    """Test suite for JobEvent serialization."""

    def test_log_event_to_dict(self):
        event = JobEvent(type="log", job_id="fmt", data="Diff in src/lib.rs\n")
        assert event.to_dict() == {
            "type": "log",
            "job_id": "fmt",
            "data": "Diff in src/lib.rs\n",
        }

    def test_complete_event_to_dict(self):
        event = JobEvent(
            type="complete",
            job_id="clippy",
            success=False,
            failure_kind=FailureKind.LINT_VIOLATION.value,
            exit_code=101,
        )
        assert event.to_dict() == {
            "type": "complete",
            "job_id": "clippy",
            "success": False,
            "failure_kind": "lint_violation",
            "exit_code": 101,
        }

    def test_timestamp_is_not_serialized(self):
        event = JobEvent(type="log", data="x", timestamp=datetime.now(UTC))
        assert "timestamp" not in event.to_dict()

    def test_from_dict(self):
        timestamp = datetime.now(UTC)
        event = JobEvent.from_dict(
            {"type": "complete", "job_id": "test", "success": True, "exit_code": 0},
            timestamp=timestamp,
        )
        assert event.type == "complete"
        assert event.job_id == "test"
        assert event.success is True
        assert event.exit_code == 0
        assert event.data is None
        assert event.timestamp == timestamp


class TestGateResult:
    """Test suite for the gate decision."""

    def test_passes_when_all_jobs_pass(self):
        result = GateResult(
            run_id="r",
            triggered=True,
            jobs=[JobResult(job_id=j, name=j, success=True) for j in ("a", "b", "c")],
        )
        assert result.passed

    def test_single_failure_fails_gate(self):
        result = GateResult(
            run_id="r",
            triggered=True,
            jobs=[
                JobResult(job_id="lint", name="lint", success=False),
                JobResult(job_id="fmt", name="fmt", success=True),
                JobResult(job_id="test", name="test", success=True),
            ],
        )
        assert not result.passed

    def test_unfinished_job_does_not_pass(self):
        result = GateResult(
            run_id="r",
            triggered=True,
            jobs=[JobResult(job_id="lint", name="lint", success=None)],
        )
        assert not result.passed

    def test_untriggered_gate_does_not_block(self):
        result = GateResult(run_id="r", triggered=False)
        assert result.passed
        assert result.to_dict() == {
            "run_id": "r",
            "triggered": False,
            "passed": True,
            "jobs": [],
        }


class TestGateRun:
    """Test suite for GateRun serialization."""

    def test_to_summary_dict(self):
        created = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
        run = GateRun(
            id="run-1",
            event="push",
            ref="main",
            status="queued",
            created_at=created,
        )
        assert run.to_summary_dict() == {
            "run_id": "run-1",
            "event": "push",
            "ref": "main",
            "status": "queued",
            "success": None,
            "created_at": created.isoformat(),
            "start_time": None,
            "end_time": None,
        }

    def test_to_dict_includes_jobs(self):
        run = GateRun(
            id="run-1",
            event="pull_request",
            ref="feature",
            status="completed",
            success=False,
            jobs=[JobResult(job_id="fmt", name="rustfmt", status="failed", success=False)],
        )
        data = run.to_dict()
        assert data["jobs"][0]["job_id"] == "fmt"
        assert data["jobs"][0]["status"] == "failed"
        assert run.is_terminal

    def test_trigger_event(self):
        run = GateRun(id="r", event="push", ref="main", status="queued", sha="abc")
        assert run.trigger_event == TriggerEvent(event="push", ref="main", sha="abc")


class TestErrors:
    """Test suite for the error taxonomy."""

    def test_failure_kind_for_check(self):
        assert FailureKind.for_check("lint") is FailureKind.LINT_VIOLATION
        assert FailureKind.for_check("format") is FailureKind.FORMAT_MISMATCH
        assert FailureKind.for_check("test") is FailureKind.TEST_FAILURE
        assert FailureKind.for_check("check") is FailureKind.CHECK_FAILURE
        assert FailureKind.for_check("unknown") is FailureKind.CHECK_FAILURE

    def test_service_unavailable_message(self):
        error = ServiceUnavailableError("postgres", "container exited with code 1")
        assert str(error) == "Service 'postgres' unavailable: container exited with code 1"
        assert error.service == "postgres"

    def test_step_failed_message(self):
        error = StepFailedError("Enforce formatting", 1)
        assert error.exit_code == 1
        assert "Enforce formatting" in str(error)
