"""
Repository pattern for data access.

Handles persistence for jobs and batches, dead-letter entries, the append-only
cost ledger and cost alerts. Every operation opens its own connection so the
repositories can be shared between worker threads.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AlertDetails,
    AlertSeverity,
    AlertType,
    Batch,
    BatchState,
    CostAlert,
    DeadLetterEntry,
    FailureCategory,
    Job,
    JobKind,
    JobState,
    PayloadRef,
    Resolution,
    RetryAttempt,
    UsageLogEntry,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so text comparison matches time order."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock until exit."""
    conn = get_connection(db_path)
    conn.row_factory = sqlite3.Row
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
    finally:
        conn.close()


@contextmanager
def _reader(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = get_connection(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``usage_log`` is an append-only ledger: no UPDATE or DELETE is ever
    performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                priority INTEGER NOT NULL,
                payload_ref TEXT NOT NULL,
                provider_id TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL,
                batch_id TEXT,
                requester_id TEXT,
                cost_estimate REAL NOT NULL,
                cost_limit REAL NOT NULL,
                timeout_ms INTEGER NOT NULL,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                available_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                retry_history TEXT NOT NULL DEFAULT '[]',
                excluded_providers TEXT NOT NULL DEFAULT '[]',
                last_error TEXT,
                result TEXT,
                rate_key TEXT,
                rate_slot TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_jobs_runnable
                ON jobs (state, priority DESC, created_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs (batch_id);

            CREATE TABLE IF NOT EXISTS batches (
                id TEXT PRIMARY KEY,
                priority INTEGER NOT NULL,
                total_jobs INTEGER NOT NULL,
                parallel_limit INTEGER NOT NULL,
                fail_fast INTEGER NOT NULL DEFAULT 0,
                requester_id TEXT,
                total_estimated_cost REAL NOT NULL DEFAULT 0,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS queue_flags (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dead_letter_entries (
                id TEXT PRIMARY KEY,
                original_job_id TEXT NOT NULL UNIQUE,
                original_job TEXT NOT NULL,
                failure_reason TEXT NOT NULL,
                failure_category TEXT NOT NULL,
                failure_count INTEGER NOT NULL,
                first_failure_at TEXT NOT NULL,
                last_failure_at TEXT NOT NULL,
                retry_attempts TEXT NOT NULL DEFAULT '[]',
                stack_trace TEXT,
                provider_id TEXT,
                template_id TEXT,
                content_id TEXT,
                requester_id TEXT,
                resolution TEXT,
                resolved_at TEXT
            );

            CREATE TABLE IF NOT EXISTS usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                job_id TEXT NOT NULL,
                provider_id TEXT,
                agent_id TEXT,
                template_id TEXT,
                content_id TEXT,
                cost REAL NOT NULL,
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                success INTEGER NOT NULL,
                error_message TEXT,
                processing_time_ms INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0,
                quality_score REAL
            );
            CREATE INDEX IF NOT EXISTS idx_usage_log_timestamp ON usage_log (timestamp);

            CREATE TABLE IF NOT EXISTS cost_alerts (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT NOT NULL,
                current REAL NOT NULL,
                limit_value REAL NOT NULL,
                provider TEXT,
                timeframe TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                acknowledged INTEGER NOT NULL DEFAULT 0,
                acknowledged_at TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


_JOB_COLUMNS = (
    "id", "kind", "priority", "payload_ref", "provider_id", "retry_count",
    "max_retries", "batch_id", "requester_id", "cost_estimate", "cost_limit",
    "timeout_ms", "state", "created_at", "available_at", "started_at",
    "finished_at", "cancel_requested", "progress", "retry_history",
    "excluded_providers", "last_error", "result", "rate_key", "rate_slot",
)

# After insert only request_cancel writes the cancellation flag.
_UPDATE_COLUMNS = tuple(
    column for column in _JOB_COLUMNS[1:] if column != "cancel_requested"
)


def _job_params(job: Job) -> Tuple:
    return (
        job.id,
        job.kind.value,
        job.priority,
        json.dumps(job.payload_ref.to_dict()),
        job.provider_id,
        job.retry_count,
        job.max_retries,
        job.batch_id,
        job.requester_id,
        job.cost_estimate,
        job.cost_limit,
        job.timeout_ms,
        job.state.value,
        _ts(job.created_at),
        _ts(job.available_at or job.created_at),
        _ts(job.started_at),
        _ts(job.finished_at),
        int(job.cancel_requested),
        job.progress,
        json.dumps([attempt.to_dict() for attempt in job.retry_history]),
        json.dumps(job.excluded_providers),
        job.last_error,
        json.dumps(job.result) if job.result is not None else None,
        job.rate_key,
        _ts(job.rate_slot),
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=JobKind(row["kind"]),
        priority=row["priority"],
        payload_ref=PayloadRef.from_dict(json.loads(row["payload_ref"])),
        provider_id=row["provider_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        batch_id=row["batch_id"],
        requester_id=row["requester_id"],
        cost_estimate=row["cost_estimate"],
        cost_limit=row["cost_limit"],
        timeout_ms=row["timeout_ms"],
        state=JobState(row["state"]),
        created_at=_dt(row["created_at"]),
        available_at=_dt(row["available_at"]),
        started_at=_dt(row["started_at"]),
        finished_at=_dt(row["finished_at"]),
        cancel_requested=bool(row["cancel_requested"]),
        progress=row["progress"],
        retry_history=[RetryAttempt.from_dict(a) for a in json.loads(row["retry_history"])],
        excluded_providers=json.loads(row["excluded_providers"]),
        last_error=row["last_error"],
        result=json.loads(row["result"]) if row["result"] else None,
        rate_key=row["rate_key"],
        rate_slot=_dt(row["rate_slot"]),
    )


def _row_to_batch(row: sqlite3.Row) -> Batch:
    return Batch(
        id=row["id"],
        priority=row["priority"],
        total_jobs=row["total_jobs"],
        parallel_limit=row["parallel_limit"],
        fail_fast=bool(row["fail_fast"]),
        requester_id=row["requester_id"],
        total_estimated_cost=row["total_estimated_cost"],
        state=BatchState(row["state"]),
        created_at=_dt(row["created_at"]),
        completed_at=_dt(row["completed_at"]),
    )


_INSERT_JOB = (
    f"INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _JOB_COLUMNS)})"
)

# Highest priority first, FIFO inside a band.
_RUNNABLE_ORDER = "ORDER BY priority DESC, created_at ASC, rowid ASC"


class JobRepository:
    """Store for jobs and batches.

    Claims are serialised by an in-process lock plus an immediate SQLite
    transaction, so a pending job is handed to exactly one worker.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        self.add_many([job])

    def add_many(self, jobs: List[Job], batch: Optional[Batch] = None) -> None:
        """Insert jobs (and optionally their batch) in a single transaction."""
        with _transaction(self.db_path) as conn:
            if batch is not None:
                conn.execute("""
                    INSERT INTO batches
                    (id, priority, total_jobs, parallel_limit, fail_fast, requester_id,
                     total_estimated_cost, state, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    batch.id, batch.priority, batch.total_jobs, batch.parallel_limit,
                    int(batch.fail_fast), batch.requester_id, batch.total_estimated_cost,
                    batch.state.value, _ts(batch.created_at), _ts(batch.completed_at),
                ))
            conn.executemany(_INSERT_JOB, [_job_params(job) for job in jobs])

    def get(self, job_id: str) -> Optional[Job]:
        with _reader(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return _row_to_job(row) if row else None

    def update(self, job: Job, expected_state: Optional[JobState] = None) -> bool:
        """Write back a job, optionally only if its stored state still matches.

        Returns:
            True if the row was written
        """
        values = dict(zip(_JOB_COLUMNS, _job_params(job)))
        assignments = ", ".join(f"{column} = ?" for column in _UPDATE_COLUMNS)
        query = f"UPDATE jobs SET {assignments} WHERE id = ?"
        params = [values[column] for column in _UPDATE_COLUMNS] + [job.id]
        if expected_state is not None:
            query += " AND state = ?"
            params.append(expected_state.value)
        with _transaction(self.db_path) as conn:
            return conn.execute(query, params).rowcount == 1

    def set_progress(self, job_id: str, progress: int) -> None:
        with _transaction(self.db_path) as conn:
            conn.execute("UPDATE jobs SET progress = ? WHERE id = ?", (progress, job_id))

    def claim_next(
        self,
        now: datetime,
        batch_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Atomically move the best runnable job to ``active``.

        Without ``batch_id`` only jobs outside batches are considered;
        batch members are claimed by the batch processor.
        """
        with self._lock, _transaction(self.db_path) as conn:
            row = self._next_job_row(conn, now, batch_id)
            if row is None:
                return None
            return self._activate(conn, row, now)

    def claim_next_work(self, now: datetime) -> Optional[Union[Job, Batch]]:
        """Claim either the best single job or the best pending batch."""
        with self._lock, _transaction(self.db_path) as conn:
            job_row = self._next_job_row(conn, now, None)
            batch_row = conn.execute(
                "SELECT * FROM batches WHERE state = ? "
                "ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT 1",
                (BatchState.PENDING.value,),
            ).fetchone()
            if job_row is None and batch_row is None:
                return None
            if batch_row is not None and (
                job_row is None
                or batch_row["priority"] > job_row["priority"]
                or (
                    batch_row["priority"] == job_row["priority"]
                    and batch_row["created_at"] < job_row["created_at"]
                )
            ):
                conn.execute(
                    "UPDATE batches SET state = ? WHERE id = ?",
                    (BatchState.ACTIVE.value, batch_row["id"]),
                )
                batch = _row_to_batch(batch_row)
                batch.state = BatchState.ACTIVE
                return batch
            return self._activate(conn, job_row, now)

    def claim_next_batch(self) -> Optional[Batch]:
        """Atomically move the best pending batch to ``active``."""
        with self._lock, _transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM batches WHERE state = ? "
                "ORDER BY priority DESC, created_at ASC, rowid ASC LIMIT 1",
                (BatchState.PENDING.value,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE batches SET state = ? WHERE id = ?",
                (BatchState.ACTIVE.value, row["id"]),
            )
            batch = _row_to_batch(row)
            batch.state = BatchState.ACTIVE
            return batch

    def _next_job_row(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        batch_id: Optional[str],
    ) -> Optional[sqlite3.Row]:
        query = "SELECT * FROM jobs WHERE state = ? AND available_at <= ?"
        params: List = [JobState.PENDING.value, _ts(now)]
        if batch_id is None:
            query += " AND batch_id IS NULL"
        else:
            query += " AND batch_id = ?"
            params.append(batch_id)
        query += f" {_RUNNABLE_ORDER} LIMIT 1"
        return conn.execute(query, params).fetchone()

    def _activate(self, conn: sqlite3.Connection, row: sqlite3.Row, now: datetime) -> Optional[Job]:
        updated = conn.execute(
            "UPDATE jobs SET state = ?, started_at = ?, progress = 0 WHERE id = ? AND state = ?",
            (JobState.ACTIVE.value, _ts(now), row["id"], JobState.PENDING.value),
        ).rowcount
        if updated != 1:
            return None
        job = _row_to_job(row)
        job.state = JobState.ACTIVE
        job.started_at = now
        job.progress = 0
        return job

    def requeue_stalled(self, now: datetime) -> int:
        """Return jobs and batches left ``active`` by a stopped process to pending."""
        with self._lock, _transaction(self.db_path) as conn:
            requeued = conn.execute(
                "UPDATE jobs SET state = ?, available_at = ?, started_at = NULL, progress = 0 "
                "WHERE state = ?",
                (JobState.PENDING.value, _ts(now), JobState.ACTIVE.value),
            ).rowcount
            conn.execute(
                "UPDATE batches SET state = ? WHERE state = ?",
                (BatchState.PENDING.value, BatchState.ACTIVE.value),
            )
            return requeued

    def request_cancel(self, job_id: str) -> bool:
        """Flag an active job for cooperative cancellation."""
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "UPDATE jobs SET cancel_requested = 1 WHERE id = ? AND state = ?",
                (job_id, JobState.ACTIVE.value),
            ).rowcount == 1

    def is_cancel_requested(self, job_id: str) -> bool:
        with _reader(self.db_path) as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return bool(row and row["cancel_requested"])

    def count_by_state(self, now: datetime) -> Dict[str, int]:
        """Counts per job state, with pending split into waiting and delayed."""
        with _reader(self.db_path) as conn:
            counts = {state.value: 0 for state in JobState}
            for row in conn.execute("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state"):
                counts[row["state"]] = row["n"]
            delayed = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE state = ? AND available_at > ?",
                (JobState.PENDING.value, _ts(now)),
            ).fetchone()[0]
        counts["delayed"] = delayed
        counts["waiting"] = counts[JobState.PENDING.value] - delayed
        return counts

    def list_jobs(
        self,
        state: Optional[JobState] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        query = "SELECT * FROM jobs"
        conditions = []
        params: List = []
        if state is not None:
            conditions.append("state = ?")
            params.append(state.value)
        if batch_id is not None:
            conditions.append("batch_id = ?")
            params.append(batch_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" {_RUNNABLE_ORDER}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with _reader(self.db_path) as conn:
            return [_row_to_job(row) for row in conn.execute(query, params)]

    def delete_terminal(self, state: JobState, older_than: datetime, limit: int) -> int:
        """Delete up to ``limit`` jobs in ``state`` finished before ``older_than``."""
        with _transaction(self.db_path) as conn:
            return conn.execute("""
                DELETE FROM jobs WHERE id IN (
                    SELECT id FROM jobs
                    WHERE state = ? AND finished_at IS NOT NULL AND finished_at < ?
                    ORDER BY finished_at ASC LIMIT ?
                )
            """, (state.value, _ts(older_than), limit)).rowcount

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with _reader(self.db_path) as conn:
            row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
            return _row_to_batch(row) if row else None

    def complete_batch(self, batch_id: str, completed_at: datetime) -> bool:
        """Mark a batch completed; only the first caller gets True."""
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "UPDATE batches SET state = ?, completed_at = ? WHERE id = ? AND state != ?",
                (BatchState.COMPLETED.value, _ts(completed_at), batch_id,
                 BatchState.COMPLETED.value),
            ).rowcount == 1

    def reopen_batch(self, batch_id: str) -> None:
        with _transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE batches SET state = ? WHERE id = ? AND state = ?",
                (BatchState.PENDING.value, batch_id, BatchState.ACTIVE.value),
            )

    def batch_member_counts(self, batch_id: str) -> Dict[JobState, int]:
        with _reader(self.db_path) as conn:
            counts = {state: 0 for state in JobState}
            for row in conn.execute(
                "SELECT state, COUNT(*) AS n FROM jobs WHERE batch_id = ? GROUP BY state",
                (batch_id,),
            ):
                counts[JobState(row["state"])] = row["n"]
            return counts

    def next_batch_availability(self, batch_id: str) -> Optional[datetime]:
        """Earliest ``available_at`` among the batch's pending members."""
        with _reader(self.db_path) as conn:
            row = conn.execute(
                "SELECT MIN(available_at) FROM jobs WHERE batch_id = ? AND state = ?",
                (batch_id, JobState.PENDING.value),
            ).fetchone()
            return _dt(row[0]) if row and row[0] else None

    def get_flag(self, name: str) -> Optional[str]:
        with _reader(self.db_path) as conn:
            row = conn.execute("SELECT value FROM queue_flags WHERE name = ?", (name,)).fetchone()
            return row["value"] if row else None

    def set_flag(self, name: str, value: str) -> None:
        with _transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO queue_flags (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                (name, value),
            )


class DeadLetterRepository:
    """Store for dead-letter entries, one per original job id."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add(self, entry: DeadLetterEntry) -> bool:
        """Insert an entry unless the original job already has one.

        Returns:
            True if this call created the entry
        """
        job = entry.original_job
        with _transaction(self.db_path) as conn:
            return conn.execute("""
                INSERT OR IGNORE INTO dead_letter_entries
                (id, original_job_id, original_job, failure_reason, failure_category,
                 failure_count, first_failure_at, last_failure_at, retry_attempts,
                 stack_trace, provider_id, template_id, content_id, requester_id,
                 resolution, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                job.id,
                json.dumps(job.to_snapshot()),
                entry.failure_reason,
                entry.failure_category.value,
                entry.failure_count,
                _ts(entry.first_failure_at),
                _ts(entry.last_failure_at),
                json.dumps([attempt.to_dict() for attempt in entry.retry_attempts]),
                entry.stack_trace,
                job.provider_id,
                job.payload_ref.template_id,
                job.payload_ref.content_id,
                job.requester_id,
                json.dumps(entry.resolution.to_dict()) if entry.resolution else None,
                _ts(entry.resolution.resolved_at) if entry.resolution else None,
            )).rowcount == 1

    def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        with _reader(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM dead_letter_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def get_by_job(self, job_id: str) -> Optional[DeadLetterEntry]:
        with _reader(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM dead_letter_entries WHERE original_job_id = ?", (job_id,)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def list_entries(
        self,
        resolved: Optional[bool] = None,
        category: Optional[FailureCategory] = None,
        provider_id: Optional[str] = None,
        content_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeadLetterEntry]:
        """List entries, most recent failure first."""
        query = "SELECT * FROM dead_letter_entries"
        conditions = []
        params: List = []
        if resolved is not None:
            conditions.append("resolution IS NOT NULL" if resolved else "resolution IS NULL")
        if category is not None:
            conditions.append("failure_category = ?")
            params.append(category.value)
        if provider_id is not None:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if content_id is not None:
            conditions.append("content_id = ?")
            params.append(content_id)
        if requester_id is not None:
            conditions.append("requester_id = ?")
            params.append(requester_id)
        if since is not None:
            conditions.append("last_failure_at >= ?")
            params.append(_ts(since))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY last_failure_at DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with _reader(self.db_path) as conn:
            return [self._row_to_entry(row) for row in conn.execute(query, params)]

    def claim_resolution(self, entry_id: str, resolution: Resolution) -> bool:
        """Set the resolution only if the entry is still unresolved."""
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "UPDATE dead_letter_entries SET resolution = ?, resolved_at = ? "
                "WHERE id = ? AND resolution IS NULL",
                (json.dumps(resolution.to_dict()), _ts(resolution.resolved_at), entry_id),
            ).rowcount == 1

    def clear_resolution(self, entry_id: str) -> None:
        """Undo a resolution claimed by a retry that could not be enqueued."""
        with _transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE dead_letter_entries SET resolution = NULL, resolved_at = NULL WHERE id = ?",
                (entry_id,),
            )

    def delete_resolved_before(self, cutoff: datetime) -> int:
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "DELETE FROM dead_letter_entries WHERE resolved_at IS NOT NULL AND resolved_at < ?",
                (_ts(cutoff),),
            ).rowcount

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=row["id"],
            original_job=Job.from_snapshot(json.loads(row["original_job"])),
            failure_reason=row["failure_reason"],
            failure_category=FailureCategory(row["failure_category"]),
            failure_count=row["failure_count"],
            first_failure_at=_dt(row["first_failure_at"]),
            last_failure_at=_dt(row["last_failure_at"]),
            retry_attempts=[RetryAttempt.from_dict(a) for a in json.loads(row["retry_attempts"])],
            stack_trace=row["stack_trace"],
            resolution=Resolution.from_dict(json.loads(row["resolution"])) if row["resolution"] else None,
        )


class UsageLedger:
    """Append-only cost ledger.

    Reports are computed by aggregating rows at read time; no running totals
    are ever stored, so concurrent appends cannot lose updates.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: UsageLogEntry) -> None:
        """Insert a single usage entry."""
        with _transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO usage_log
                (timestamp, job_id, provider_id, agent_id, template_id, content_id,
                 cost, prompt_tokens, completion_tokens, total_tokens, success,
                 error_message, processing_time_ms, retry_count, quality_score)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _ts(entry.timestamp),
                entry.job_id,
                entry.provider_id,
                entry.agent_id,
                entry.template_id,
                entry.content_id,
                entry.cost,
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.total_tokens,
                int(entry.success),
                entry.error_message,
                entry.processing_time_ms,
                entry.retry_count,
                entry.quality_score,
            ))

    def fetch(
        self,
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
    ) -> List[UsageLogEntry]:
        """Entries with ``start <= timestamp <= end``, oldest first."""
        query = "SELECT * FROM usage_log WHERE timestamp >= ? AND timestamp <= ?"
        params: List = [_ts(start), _ts(end)]
        if provider_id is not None:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY timestamp ASC, id ASC"
        with _reader(self.db_path) as conn:
            return [
                UsageLogEntry(
                    timestamp=_dt(row["timestamp"]),
                    job_id=row["job_id"],
                    provider_id=row["provider_id"],
                    agent_id=row["agent_id"],
                    template_id=row["template_id"],
                    content_id=row["content_id"],
                    cost=row["cost"],
                    prompt_tokens=row["prompt_tokens"],
                    completion_tokens=row["completion_tokens"],
                    total_tokens=row["total_tokens"],
                    success=bool(row["success"]),
                    error_message=row["error_message"],
                    processing_time_ms=row["processing_time_ms"],
                    retry_count=row["retry_count"],
                    quality_score=row["quality_score"],
                )
                for row in conn.execute(query, params)
            ]

    def total_cost(
        self,
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
    ) -> float:
        query = "SELECT SUM(cost) FROM usage_log WHERE timestamp >= ? AND timestamp <= ?"
        params: List = [_ts(start), _ts(end)]
        if provider_id is not None:
            query += " AND provider_id = ?"
            params.append(provider_id)
        with _reader(self.db_path) as conn:
            return float(conn.execute(query, params).fetchone()[0] or 0)


class AlertRepository:
    """Store for cost alerts."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add(self, alert: CostAlert) -> None:
        with _transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO cost_alerts
                (id, type, severity, message, current, limit_value, provider, timeframe,
                 triggered_at, acknowledged, acknowledged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                alert.id,
                alert.type.value,
                alert.severity.value,
                alert.message,
                alert.details.current,
                alert.details.limit,
                alert.details.provider,
                alert.details.timeframe,
                _ts(alert.triggered_at),
                int(alert.acknowledged),
                _ts(alert.acknowledged_at),
            ))

    def get(self, alert_id: str) -> Optional[CostAlert]:
        with _reader(self.db_path) as conn:
            row = conn.execute("SELECT * FROM cost_alerts WHERE id = ?", (alert_id,)).fetchone()
            return self._row_to_alert(row) if row else None

    def list_alerts(self, include_acknowledged: bool = False) -> List[CostAlert]:
        """Alerts, newest first."""
        query = "SELECT * FROM cost_alerts"
        if not include_acknowledged:
            query += " WHERE acknowledged = 0"
        query += " ORDER BY triggered_at DESC"
        with _reader(self.db_path) as conn:
            return [self._row_to_alert(row) for row in conn.execute(query)]

    def find_since(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        provider: Optional[str],
        timeframe: str,
        since: datetime,
    ) -> Optional[CostAlert]:
        """Most recent alert with the same dedup key triggered after ``since``."""
        query = (
            "SELECT * FROM cost_alerts WHERE type = ? AND severity = ? AND timeframe = ? "
            "AND triggered_at >= ?"
        )
        params: List = [alert_type.value, severity.value, timeframe, _ts(since)]
        if provider is None:
            query += " AND provider IS NULL"
        else:
            query += " AND provider = ?"
            params.append(provider)
        query += " ORDER BY triggered_at DESC LIMIT 1"
        with _reader(self.db_path) as conn:
            row = conn.execute(query, params).fetchone()
            return self._row_to_alert(row) if row else None

    def acknowledge(self, alert_id: str, acknowledged_at: datetime) -> bool:
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "UPDATE cost_alerts SET acknowledged = 1, acknowledged_at = ? "
                "WHERE id = ? AND acknowledged = 0",
                (_ts(acknowledged_at), alert_id),
            ).rowcount == 1

    def delete_acknowledged_before(self, cutoff: datetime) -> int:
        with _transaction(self.db_path) as conn:
            return conn.execute(
                "DELETE FROM cost_alerts WHERE acknowledged = 1 AND triggered_at < ?",
                (_ts(cutoff),),
            ).rowcount

    @staticmethod
    def _row_to_alert(row: sqlite3.Row) -> CostAlert:
        return CostAlert(
            id=row["id"],
            type=AlertType(row["type"]),
            severity=AlertSeverity(row["severity"]),
            message=row["message"],
            details=AlertDetails(
                current=row["current"],
                limit=row["limit_value"],
                timeframe=row["timeframe"],
                provider=row["provider"],
            ),
            triggered_at=_dt(row["triggered_at"]),
            acknowledged=bool(row["acknowledged"]),
            acknowledged_at=_dt(row["acknowledged_at"]),
        )
