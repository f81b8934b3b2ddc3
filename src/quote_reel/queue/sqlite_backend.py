"""SQLite implementation of JobStore.

This module provides the local-first, crash-safe job store using:
- sqlite-utils for schema management and read queries
- WAL mode so status polling never blocks on a worker's write
- BEGIN IMMEDIATE transactions so every claim/commit is a single atomic step
- Exponential backoff retry for database lock handling
- A state transition log for auditing
"""

import functools
import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from .backends import JobStore
from .errors import NotFoundError, StoreError
from .models import TERMINAL_STATES, Job, JobState, StateTransition

logger = logging.getLogger(__name__)

ERROR_MAX_CHARS = 500
SNIPPET_MAX_CHARS = 200

# SQLite schema SQL
SCHEMA_SQL = """
-- Job records (seq breaks created_at ties in insertion order)
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    state TEXT NOT NULL,
    payload TEXT NOT NULL,
    progress REAL,
    result TEXT,
    error TEXT,
    last_error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    claimed_at TEXT,
    claimed_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_created ON jobs(state, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_jobs_state_claimed ON jobs(state, claimed_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);
"""

JOB_COLUMNS = (
    "id, state, payload, progress, result, error, last_error, attempts, max_attempts, "
    "claimed_at, claimed_by, created_at, updated_at, completed_at"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string order equals time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database is busy" in msg


def _retry_on_lock(method: Callable) -> Callable:
    """Retry a store operation on SQLITE_BUSY with exponential backoff.

    Backoff: 100ms, 200ms, 400ms, ... up to ``self.lock_retries`` attempts.
    Anything still failing surfaces as StoreError; the job row is unchanged
    because every write runs in its own transaction.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        for attempt in range(self.lock_retries):
            try:
                return method(self, *args, **kwargs)
            except sqlite3.OperationalError as e:
                if _is_lock_error(e) and attempt < self.lock_retries - 1:
                    delay = 0.1 * (2 ** attempt)
                    logger.warning(
                        "%s: database locked, retrying in %.1fs (%d/%d)",
                        method.__name__, delay, attempt + 1, self.lock_retries,
                    )
                    time.sleep(delay)
                    continue
                raise StoreError(f"{method.__name__} failed: {e}") from e
            except sqlite3.DatabaseError as e:
                raise StoreError(f"{method.__name__} failed: {e}") from e
        raise StoreError(f"{method.__name__} failed: retries exhausted")

    return wrapper


class SQLiteJobStore(JobStore):
    """SQLite-based job store with atomic claim operations.

    Features:
    - Atomic claim via UPDATE...RETURNING inside BEGIN IMMEDIATE
    - Guarded terminal writes (state must still be processing)
    - Exponential backoff retry for lock contention
    - Automatic state transition logging

    Concurrency safety:
    - Each thread or process opens its own store (one connection each)
    - BEGIN IMMEDIATE takes the write lock at transaction start, so the
      select-then-update of a claim cannot interleave with another claimant
    """

    def __init__(
        self,
        db_path: str,
        max_attempts: int = 3,
        busy_timeout_s: float = 5.0,
        lock_retries: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Open (and create if needed) the job database.

        Args:
            db_path: Path to SQLite database file
            max_attempts: Default claim budget for new jobs
            busy_timeout_s: How long SQLite waits on a lock before raising
            lock_retries: Attempts per operation on lock contention
            clock: Returns the current UTC time (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if lock_retries < 1:
            raise ValueError("lock_retries must be >= 1")

        self.db_path = Path(db_path)
        self.max_attempts = max_attempts
        self.lock_retries = lock_retries
        self._clock = clock or _utcnow

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly in _immediate()
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=busy_timeout_s,
                isolation_level=None,
                check_same_thread=False,
            )
            self.db = Database(conn)

            # WAL lets status readers proceed while a worker holds the write lock
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")

            self._create_schema()
        except (sqlite3.DatabaseError, OSError) as e:
            raise StoreError(f"Cannot open job store at {self.db_path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def _now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT."""
        conn = self.db.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    @_retry_on_lock
    def create(self, payload: Dict[str, Any], max_attempts: Optional[int] = None) -> str:
        """Insert a new pending job and return its id."""
        budget = max_attempts if max_attempts is not None else self.max_attempts
        if budget < 1:
            raise ValueError("max_attempts must be >= 1")

        job_id = str(uuid.uuid4())
        now = _ts(self._now())

        with self._immediate() as conn:
            conn.execute(
                """
                INSERT INTO jobs (id, state, payload, attempts, max_attempts, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                (job_id, JobState.PENDING.value, json.dumps(payload), budget, now, now),
            )
            self._log_transition(conn, job_id, None, JobState.PENDING.value)

        logger.info("Job %s submitted (max_attempts=%d)", job_id, budget)
        return job_id

    @_retry_on_lock
    def get(self, job_id: str) -> Job:
        """Point lookup by id."""
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id], select=JOB_COLUMNS))
        if not rows:
            raise NotFoundError(job_id)
        return self._row_to_job(rows[0])

    @_retry_on_lock
    def claim_next_pending(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest pending job.

        The subquery picks the candidate and the outer ``state = 'pending'``
        re-check makes the update conditional, all under one write lock.
        Rows that already used their whole budget are never claimed.
        """
        now = _ts(self._now())

        with self._immediate() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = ?,
                    claimed_at = ?,
                    claimed_by = ?,
                    attempts = attempts + 1,
                    progress = 0,
                    updated_at = ?
                WHERE seq = (
                    SELECT seq FROM jobs
                    WHERE state = ? AND attempts < max_attempts
                    ORDER BY created_at ASC, seq ASC
                    LIMIT 1
                )
                AND state = ?
                RETURNING {JOB_COLUMNS}
                """,
                (
                    JobState.PROCESSING.value,
                    now,
                    worker_id,
                    now,
                    JobState.PENDING.value,
                    JobState.PENDING.value,
                ),
            )
            rows = self._fetch_dicts(cursor)
            if not rows:
                return None

            job = self._row_to_job(rows[0])
            self._log_transition(
                conn, job.id, JobState.PENDING.value, JobState.PROCESSING.value, worker_id=worker_id
            )

        logger.info("Job %s claimed by %s (attempt %d/%d)", job.id, worker_id, job.attempts, job.max_attempts)
        return job

    @_retry_on_lock
    def update_progress(self, job_id: str, progress: float, worker_id: Optional[str] = None) -> bool:
        """Record progress; never lowers it and ignores stale writers."""
        value = max(0.0, min(100.0, float(progress)))
        sql = """
            UPDATE jobs
            SET progress = MAX(COALESCE(progress, 0), ?),
                updated_at = ?
            WHERE id = ? AND state = ?
        """
        params: List[Any] = [value, _ts(self._now()), job_id, JobState.PROCESSING.value]
        if worker_id is not None:
            sql += " AND claimed_by = ?"
            params.append(worker_id)

        cursor = self.db.conn.execute(sql, params)
        return cursor.rowcount > 0

    @_retry_on_lock
    def complete(self, job_id: str, result: Any, worker_id: Optional[str] = None) -> bool:
        """Transition processing → completed; no-op otherwise."""
        now = _ts(self._now())
        sql = """
            UPDATE jobs
            SET state = ?,
                result = ?,
                error = NULL,
                progress = 100,
                completed_at = ?,
                updated_at = ?
            WHERE id = ? AND state = ?
        """
        params: List[Any] = [
            JobState.COMPLETED.value,
            json.dumps(result, default=str),
            now,
            now,
            job_id,
            JobState.PROCESSING.value,
        ]
        if worker_id is not None:
            sql += " AND claimed_by = ?"
            params.append(worker_id)

        with self._immediate() as conn:
            rows = conn.execute(sql + " RETURNING claimed_by", params).fetchall()
            if not rows:
                logger.info("Ignoring completion of job %s: no longer claimed by this worker", job_id)
                return False
            self._log_transition(
                conn, job_id, JobState.PROCESSING.value, JobState.COMPLETED.value, worker_id=rows[0][0]
            )

        logger.info("Job %s completed", job_id)
        return True

    @_retry_on_lock
    def fail(
        self,
        job_id: str,
        error: str,
        retry: bool = False,
        worker_id: Optional[str] = None,
    ) -> Optional[JobState]:
        """Record a failed attempt.

        With retry=True the job returns to pending while attempts remain and
        becomes failed once they are used up, decided inside the same guarded
        UPDATE so concurrent writers cannot disagree about the outcome.
        """
        error_snippet = error[:ERROR_MAX_CHARS] if error else "Unknown error"
        now = _ts(self._now())
        # SET expressions all see the pre-update row
        requeue = "(? AND attempts < max_attempts)"
        sql = f"""
            UPDATE jobs
            SET state = CASE WHEN {requeue} THEN '{JobState.PENDING.value}' ELSE '{JobState.FAILED.value}' END,
                error = CASE WHEN {requeue} THEN NULL ELSE ? END,
                last_error = ?,
                progress = NULL,
                claimed_at = CASE WHEN {requeue} THEN NULL ELSE claimed_at END,
                claimed_by = CASE WHEN {requeue} THEN NULL ELSE claimed_by END,
                completed_at = CASE WHEN {requeue} THEN NULL ELSE ? END,
                updated_at = ?
            WHERE id = ? AND state = ?
        """
        flag = 1 if retry else 0
        params: List[Any] = [
            flag,
            flag,
            error_snippet,
            error_snippet,
            flag,
            flag,
            flag,
            now,
            now,
            job_id,
            JobState.PROCESSING.value,
        ]
        if worker_id is not None:
            sql += " AND claimed_by = ?"
            params.append(worker_id)

        with self._immediate() as conn:
            rows = conn.execute(sql + " RETURNING state, attempts, max_attempts", params).fetchall()
            if not rows:
                logger.info("Ignoring failure of job %s: no longer claimed by this worker", job_id)
                return None
            new_state = JobState(rows[0][0])
            self._log_transition(
                conn,
                job_id,
                JobState.PROCESSING.value,
                new_state.value,
                worker_id=worker_id,
                error=error_snippet,
            )

        attempts, max_attempts = rows[0][1], rows[0][2]
        if new_state == JobState.PENDING:
            logger.warning(
                "Job %s attempt %d/%d failed, requeued: %s",
                job_id, attempts, max_attempts, error_snippet[:SNIPPET_MAX_CHARS],
            )
        else:
            logger.error(
                "Job %s failed after %d/%d attempts: %s",
                job_id, attempts, max_attempts, error_snippet[:SNIPPET_MAX_CHARS],
            )
        return new_state

    @_retry_on_lock
    def reclaim_stale(self, timeout_s: float) -> int:
        """Crash recovery: release jobs whose claim is older than timeout_s.

        Logic:
        - Stale jobs with attempts left go back to pending (claim cleared,
          attempts unchanged, so the retry limit still applies)
        - Stale jobs on their last attempt become failed instead, so a job
          is never claimed more than max_attempts times
        """
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

        now_dt = self._now()
        now = _ts(now_dt)
        cutoff = _ts(now_dt - timedelta(seconds=timeout_s))
        requeue = "attempts < max_attempts"
        reclaim_note = f"RenderTimeoutError: claim older than {timeout_s:g}s, worker presumed lost"
        exhausted_note = f"{reclaim_note}; no attempts left"

        with self._immediate() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = CASE WHEN {requeue} THEN ? ELSE ? END,
                    error = CASE WHEN {requeue} THEN NULL ELSE ? END,
                    last_error = ?,
                    progress = NULL,
                    claimed_at = CASE WHEN {requeue} THEN NULL ELSE claimed_at END,
                    claimed_by = CASE WHEN {requeue} THEN NULL ELSE claimed_by END,
                    completed_at = CASE WHEN {requeue} THEN NULL ELSE ? END,
                    updated_at = ?
                WHERE state = ? AND claimed_at < ?
                RETURNING id, state
                """,
                (
                    JobState.PENDING.value,
                    JobState.FAILED.value,
                    exhausted_note,
                    reclaim_note,
                    now,
                    now,
                    JobState.PROCESSING.value,
                    cutoff,
                ),
            )
            rows = cursor.fetchall()

            for job_id, state in rows:
                self._log_transition(
                    conn,
                    job_id,
                    JobState.PROCESSING.value,
                    state,
                    error=exhausted_note if state == JobState.FAILED.value else reclaim_note,
                )

        for job_id, state in rows:
            if state == JobState.PENDING.value:
                logger.warning("Job %s reclaimed: claim older than %gs", job_id, timeout_s)
            else:
                logger.error("Job %s failed: stale claim on its last attempt", job_id)
        return len(rows)

    @_retry_on_lock
    def list_jobs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
        """Query jobs by state, oldest first.

        Complexity: O(n) scan (acceptable for status commands)
        """
        if state:
            rows = self.db["jobs"].rows_where(
                "state = ?", [JobState(state).value], select=JOB_COLUMNS,
                order_by="created_at, seq", limit=limit,
            )
        else:
            rows = self.db["jobs"].rows_where(
                select=JOB_COLUMNS, order_by="created_at, seq", limit=limit
            )
        return [self._row_to_job(row) for row in rows]

    @_retry_on_lock
    def count_by_state(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobState}
        for state, count in self.db.execute(
            "SELECT state, COUNT(*) FROM jobs GROUP BY state"
        ).fetchall():
            counts[state] = count
        return counts

    @_retry_on_lock
    def history(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id"
        )
        return [
            StateTransition(**{**row, "timestamp": _parse_ts(row["timestamp"])})
            for row in rows
        ]

    @_retry_on_lock
    def delete_finished_before(self, state: str, cutoff: datetime) -> int:
        """Delete terminal jobs (and their transition log) finished before cutoff."""
        target = JobState(state)
        if target not in TERMINAL_STATES:
            raise ValueError(f"Only terminal jobs can be deleted, got '{target.value}'")

        params = (target.value, _ts(cutoff))
        with self._immediate() as conn:
            conn.execute(
                """
                DELETE FROM state_transitions WHERE job_id IN (
                    SELECT id FROM jobs WHERE state = ? AND completed_at < ?
                )
                """,
                params,
            )
            cursor = conn.execute(
                "DELETE FROM jobs WHERE state = ? AND completed_at < ?", params
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info("Deleted %d %s jobs finished before %s", deleted, target.value, _ts(cutoff))
        return deleted

    def close(self) -> None:
        self.db.conn.close()

    @staticmethod
    def _fetch_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
        columns = [c[0] for c in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        """Convert a jobs row to a Job model (JSON and timestamp columns decoded)."""
        return Job(
            id=row["id"],
            state=JobState(row["state"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            progress=row["progress"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=row["error"],
            last_error=row["last_error"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            claimed_at=_parse_ts(row["claimed_at"]),
            claimed_by=row["claimed_by"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                from_state,
                to_state,
                _ts(self._now()),
                worker_id,
                error[:SNIPPET_MAX_CHARS] if error else None,
            ),
        )
