"""
SQLite implementation of the gate run repository.

Uses aiosqlite for async operations.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

from datetime import UTC, datetime

import aiosqlite

from gate_common.models import GateRun, JobEvent, JobResult
from gate_common.repository import GateRunRepository

_RUN_COLUMNS = (
    "id, event, ref, sha, status, success, created_at, start_time, end_time, zip_file_path"
)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_int(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _to_bool(value: int | None) -> bool | None:
    return bool(value) if value is not None else None


class SQLiteGateRunRepository(GateRunRepository):
    """
    SQLite-based gate run storage implementation.

    Uses a single database file with multiple tables:
    - runs: One row per evaluated trigger event
    - job_results: Per-job outcome with foreign key to runs
    - events: Sequential job events with foreign key to runs
    """

    def __init__(self, db_path: str = "ci_gate.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                event TEXT NOT NULL,
                ref TEXT NOT NULL,
                sha TEXT,
                status TEXT NOT NULL,
                success INTEGER,
                created_at TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                zip_file_path TEXT
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_ref
            ON runs(ref)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS job_results (
                run_id TEXT NOT NULL,
                job_id TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                success INTEGER,
                failure_kind TEXT,
                exit_code INTEGER,
                start_time TEXT,
                end_time TEXT,
                PRIMARY KEY (run_id, job_id),
                FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                job_id TEXT,
                type TEXT NOT NULL,
                data TEXT,
                success INTEGER,
                failure_kind TEXT,
                exit_code INTEGER,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_run_id
            ON events(run_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def create_run(self, run: GateRun) -> None:
        conn = await self._get_connection()

        created_at = run.created_at or datetime.now(UTC)
        await conn.execute(
            f"""
            INSERT INTO runs ({_RUN_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.event,
                run.ref,
                run.sha,
                run.status,
                _to_int(run.success),
                created_at.isoformat(),
                run.start_time.isoformat() if run.start_time else None,
                run.end_time.isoformat() if run.end_time else None,
                run.zip_file_path,
            ),
        )
        await conn.commit()

        for result in run.jobs:
            await self.save_job_result(run.id, result)

    def _row_to_run(self, row: tuple) -> GateRun:
        (
            run_id,
            event,
            ref,
            sha,
            status,
            success,
            created_at_str,
            start_time_str,
            end_time_str,
            zip_file_path,
        ) = row
        return GateRun(
            id=run_id,
            event=event,
            ref=ref,
            sha=sha,
            status=status,
            success=_to_bool(success),
            created_at=_parse_time(created_at_str),
            start_time=_parse_time(start_time_str),
            end_time=_parse_time(end_time_str),
            zip_file_path=zip_file_path,
        )

    async def get_run(self, run_id: str) -> GateRun | None:
        """
        Retrieve a run with its job results and all its events.

        Args:
            run_id: UUID of the run to retrieve

        Returns:
            GateRun if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        run = self._row_to_run(row)
        run.jobs = await self._get_job_results(run_id)
        run.events = await self.get_events(run_id)
        return run

    async def list_runs(self, ref: str | None = None) -> list[GateRun]:
        """
        List runs newest first (with job results, without events).

        Args:
            ref: Only list runs for this branch
        """
        conn = await self._get_connection()

        sql = f"SELECT {_RUN_COLUMNS} FROM runs"
        params: tuple = ()
        if ref is not None:
            sql += " WHERE ref = ?"
            params = (ref,)
        sql += " ORDER BY created_at DESC"

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()

        runs = []
        for row in rows:
            run = self._row_to_run(row)
            run.jobs = await self._get_job_results(run.id)
            runs.append(run)
        return runs

    async def update_run_status(
        self, run_id: str, status: str, start_time: datetime | None = None
    ) -> None:
        conn = await self._get_connection()

        # Build dynamic SQL based on what's being updated
        updates = ["status = ?"]
        params: list = [status]

        if start_time is not None:
            updates.append("start_time = ?")
            params.append(start_time.isoformat())

        params.append(run_id)  # WHERE clause parameter

        sql = f"UPDATE runs SET {', '.join(updates)} WHERE id = ?"
        await conn.execute(sql, params)
        await conn.commit()

    async def complete_run(
        self, run_id: str, success: bool, end_time: datetime, status: str = "completed"
    ) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE runs SET status = ?, success = ?, end_time = ? WHERE id = ?",
            (status, 1 if success else 0, end_time.isoformat(), run_id),
        )
        await conn.commit()

    async def save_job_result(self, run_id: str, result: JobResult) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT OR REPLACE INTO job_results
                (run_id, job_id, name, status, success, failure_kind, exit_code, start_time, end_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                result.job_id,
                result.name,
                result.status,
                _to_int(result.success),
                result.failure_kind,
                result.exit_code,
                result.start_time.isoformat() if result.start_time else None,
                result.end_time.isoformat() if result.end_time else None,
            ),
        )
        await conn.commit()

    async def _get_job_results(self, run_id: str) -> list[JobResult]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT job_id, name, status, success, failure_kind, exit_code, start_time, end_time
            FROM job_results
            WHERE run_id = ?
            ORDER BY rowid
            """,
            (run_id,),
        )
        rows = await cursor.fetchall()

        results = []
        for row in rows:
            (
                job_id,
                name,
                status,
                success,
                failure_kind,
                exit_code,
                start_time_str,
                end_time_str,
            ) = row
            results.append(
                JobResult(
                    job_id=job_id,
                    name=name,
                    status=status,
                    success=_to_bool(success),
                    failure_kind=failure_kind,
                    exit_code=exit_code,
                    start_time=_parse_time(start_time_str),
                    end_time=_parse_time(end_time_str),
                )
            )
        return results

    async def add_event(self, run_id: str, event: JobEvent) -> None:
        conn = await self._get_connection()

        timestamp = event.timestamp or datetime.now(UTC)

        await conn.execute(
            """
            INSERT INTO events (run_id, job_id, type, data, success, failure_kind, exit_code, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                event.job_id,
                event.type,
                event.data,
                _to_int(event.success),
                event.failure_kind,
                event.exit_code,
                timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_events(self, run_id: str, from_index: int = 0) -> list[JobEvent]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT job_id, type, data, success, failure_kind, exit_code, timestamp
            FROM events
            WHERE run_id = ?
            ORDER BY id
            LIMIT -1 OFFSET ?
            """,
            (run_id, from_index),
        )
        rows = await cursor.fetchall()

        events = []
        for row in rows:
            (
                job_id,
                event_type,
                data,
                success_val,
                failure_kind,
                exit_code,
                timestamp_str,
            ) = row
            events.append(
                JobEvent(
                    type=event_type,
                    job_id=job_id,
                    data=data,
                    success=_to_bool(success_val),
                    failure_kind=failure_kind,
                    exit_code=exit_code,
                    timestamp=datetime.fromisoformat(timestamp_str),
                )
            )
        return events

    async def delete_run(self, run_id: str) -> bool:
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM runs WHERE id = ?", (run_id,))
        await conn.commit()
        return cursor.rowcount > 0
