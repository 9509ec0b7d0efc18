"""
Durable job records.

The store is the single source of truth for job state. The owning worker is
the only writer of a given job while it is active; the supervisor and HTTP
status queries are readers. Every method is one short transaction.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import (
    Database,
    deserialize_datetime,
    dump_json,
    load_json,
    serialize_datetime,
)
from .models import BackoffPolicy, Job, JobState

TERMINAL_STATES = (JobState.COMPLETED.value, JobState.FAILED.value)


def _row_to_job(row: sqlite3.Row) -> Job:
    """Convert a database row to a Job."""
    return Job(
        id=row["id"],
        queue_name=row["queue_name"],
        name=row["name"],
        payload=load_json(row["payload"]) or {},
        status=JobState(row["status"]),
        priority=row["priority"],
        max_attempts=row["max_attempts"],
        backoff=BackoffPolicy.model_validate(load_json(row["backoff"])),
        attempts_made=row["attempts_made"],
        progress=row["progress"],
        current_step=row["current_step"],
        result=load_json(row["result"]),
        failure_reason=row["failure_reason"],
        available_at=row["available_at"],
        heartbeat_at=row["heartbeat_at"],
        enqueued_at=deserialize_datetime(row["enqueued_at"]),
        started_at=deserialize_datetime(row["started_at"]),
        finished_at=deserialize_datetime(row["finished_at"]),
    )


class JobStatusStore:
    def __init__(self, database: Database):
        self.database = database

    def insert(self, job: Job) -> None:
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, queue_name, name, payload, status, priority,
                    max_attempts, backoff, attempts_made, progress,
                    available_at, enqueued_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.queue_name,
                    job.name,
                    dump_json(job.payload),
                    job.status.value,
                    job.priority,
                    job.max_attempts,
                    job.backoff.model_dump_json(),
                    job.attempts_made,
                    job.progress,
                    job.available_at,
                    serialize_datetime(job.enqueued_at),
                ),
            )

    def get(self, job_id: str) -> Optional[Job]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return _row_to_job(row) if row else None

    def list_jobs(self, queue_name: Optional[str] = None, status: Optional[JobState] = None) -> List[Job]:
        """List jobs in enqueue order, optionally filtered by queue and state."""
        clauses = []
        values: List[Any] = []
        if queue_name is not None:
            clauses.append("queue_name = ?")
            values.append(queue_name)
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.database.connection() as conn:
            rows = conn.execute(f"SELECT * FROM jobs {where} ORDER BY enqueued_at, rowid", values).fetchall()
            return [_row_to_job(row) for row in rows]

    def claim_next(self, queue_name: str, concurrency: int, now: float, started_at: datetime) -> Optional[Job]:
        """
        Move the next deliverable job of a queue to ``active``.

        Args:
            queue_name: Queue to claim from
            concurrency: Maximum number of simultaneously active jobs
            now: Current epoch time; jobs with ``available_at`` in the future are skipped
            started_at: Timestamp recorded as the start of this delivery

        Returns:
            The claimed job, or None when the queue is empty or at its ceiling

        Note:
            The count, the selection and the update share one
            ``BEGIN IMMEDIATE`` transaction, so the ceiling holds across processes.
        """
        with self.database.immediate() as conn:
            active = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE queue_name = ? AND status = ?",
                (queue_name, JobState.ACTIVE.value),
            ).fetchone()[0]
            if active >= concurrency:
                return None

            row = conn.execute(
                """
                SELECT id FROM jobs
                WHERE queue_name = ? AND status = ? AND available_at <= ?
                ORDER BY priority ASC, enqueued_at ASC, rowid ASC
                LIMIT 1
                """,
                (queue_name, JobState.PENDING.value, now),
            ).fetchone()
            if not row:
                return None

            conn.execute(
                """
                UPDATE jobs
                SET status = ?, attempts_made = attempts_made + 1,
                    started_at = ?, heartbeat_at = ?, finished_at = NULL
                WHERE id = ?
                """,
                (JobState.ACTIVE.value, serialize_datetime(started_at), now, row["id"]),
            )
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
            return _row_to_job(claimed)

    def update_progress(self, job_id: str, percent: int, step: Optional[str], now: float) -> bool:
        """Raise the stored progress to ``percent``; a lower value never overwrites a higher one."""
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET progress = MAX(progress, ?),
                    current_step = COALESCE(?, current_step),
                    heartbeat_at = ?
                WHERE id = ? AND status = ?
                """,
                (percent, step, now, job_id, JobState.ACTIVE.value),
            )
            return cursor.rowcount > 0

    def mark_completed(self, job_id: str, result: Any, finished_at: datetime) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, progress = 100, result = ?, failure_reason = NULL, finished_at = ?
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in TERMINAL_STATES)})
                """,
                (JobState.COMPLETED.value, dump_json(result), serialize_datetime(finished_at), job_id, *TERMINAL_STATES),
            )
            return cursor.rowcount > 0

    def mark_failed(self, job_id: str, reason: str, finished_at: datetime) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, failure_reason = ?, finished_at = ?
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in TERMINAL_STATES)})
                """,
                (JobState.FAILED.value, reason, serialize_datetime(finished_at), job_id, *TERMINAL_STATES),
            )
            return cursor.rowcount > 0

    def schedule_retry(self, job_id: str, reason: str, available_at: float) -> bool:
        """Return an active job to ``pending`` so it is redelivered after ``available_at``."""
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, failure_reason = ?, available_at = ?, heartbeat_at = NULL
                WHERE id = ? AND status = ?
                """,
                (JobState.PENDING.value, reason, available_at, job_id, JobState.ACTIVE.value),
            )
            return cursor.rowcount > 0

    def count_by_status(self, queue_name: str) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM jobs WHERE queue_name = ? GROUP BY status",
                (queue_name,),
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    def list_stalled(self, queue_name: str, heartbeat_before: float) -> List[Job]:
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE queue_name = ? AND status = ? AND heartbeat_at < ?
                """,
                (queue_name, JobState.ACTIVE.value, heartbeat_before),
            ).fetchall()
            return [_row_to_job(row) for row in rows]

    def prune_completed(self, queue_name: str, finished_before: datetime, keep: int) -> int:
        """
        Delete completed jobs older than ``finished_before`` or beyond the newest ``keep``.

        Returns:
            Number of deleted job records
        """
        with self.database.connection() as conn:
            removed = conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND status = ? AND finished_at < ?",
                (queue_name, JobState.COMPLETED.value, serialize_datetime(finished_before)),
            ).rowcount
            removed += conn.execute(
                """
                DELETE FROM jobs WHERE id IN (
                    SELECT id FROM jobs
                    WHERE queue_name = ? AND status = ?
                    ORDER BY finished_at DESC, rowid DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (queue_name, JobState.COMPLETED.value, keep),
            ).rowcount
            return removed

    def delete(self, job_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0
