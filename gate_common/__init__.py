"""
Gate common module.

This module contains the shared workflow and run models, the error taxonomy
and the repository interface used across the gate components (controller,
persistence, server, client).

The common module has no dependencies on other gate_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import FailureKind, GateError, ServiceUnavailableError, WorkflowError
from .models import (
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
from .repository import GateRunRepository
from .workflow import code_quality_workflow, load_workflow, parse_workflow, parse_workflow_yaml

__all__ = [
    "FailureKind",
    "GateError",
    "GateResult",
    "GateRun",
    "GateRunRepository",
    "JobEvent",
    "JobResult",
    "JobSpec",
    "PortMapping",
    "ServiceDependency",
    "ServiceUnavailableError",
    "Step",
    "Trigger",
    "TriggerEvent",
    "Workflow",
    "WorkflowError",
    "code_quality_workflow",
    "load_workflow",
    "parse_workflow",
    "parse_workflow_yaml",
]
