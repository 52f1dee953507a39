"""
Abstract repository interface for gate run persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import GateRun, JobEvent, JobResult


class GateRunRepository(ABC):
    """
    Abstract base class for gate run storage operations.

    Implementations must provide async-safe access to run data and handle
    their own connection management.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create the storage schema if it does not exist."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def create_run(self, run: GateRun) -> None:
        """
        Create a new gate run.

        Args:
            run: GateRun object to persist

        Raises:
            Exception: If a run with the same ID already exists
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> GateRun | None:
        """
        Retrieve a run with its job results and events.

        Args:
            run_id: UUID of the run to retrieve

        Returns:
            GateRun if found, None otherwise
        """

    @abstractmethod
    async def list_runs(self, ref: str | None = None) -> list[GateRun]:
        """
        List runs, newest first, without events.

        Args:
            ref: Only return runs triggered for this branch
        """

    @abstractmethod
    async def update_run_status(
        self, run_id: str, status: str, start_time: datetime | None = None
    ) -> None:
        """
        Update a run's status and optionally its start time.

        Args:
            run_id: UUID of the run to update
            status: New status ("queued", "running", "completed", "failed")
            start_time: Optional timestamp when the run started
        """

    @abstractmethod
    async def complete_run(
        self, run_id: str, success: bool, end_time: datetime, status: str = "completed"
    ) -> None:
        """
        Mark a run as finished with its gate decision.

        Args:
            run_id: UUID of the run to complete
            success: The gate decision (AND of all job results)
            end_time: Timestamp when the run finished
            status: "completed", or "failed" when the run could not execute
        """

    @abstractmethod
    async def save_job_result(self, run_id: str, result: JobResult) -> None:
        """Insert or replace the result of one job of a run."""

    @abstractmethod
    async def add_event(self, run_id: str, event: JobEvent) -> None:
        """Append an event to a run's history."""

    @abstractmethod
    async def get_events(self, run_id: str, from_index: int = 0) -> list[JobEvent]:
        """
        Get events for a run, optionally from a specific index.

        Args:
            run_id: UUID of the run
            from_index: Starting index (0-based) for event retrieval

        Returns:
            List of events from the specified index onward
        """

    @abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        """
        Delete a run with its job results and events.

        Returns:
            True if a run was deleted, False if it did not exist
        """
