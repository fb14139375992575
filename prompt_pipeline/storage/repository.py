"""
Repository functions for data access.

Owns every SQL statement against the jobs, rate_limits and usage_tracking
tables. Callers above the storage layer go through the Job Store, Quota
Ledger and Usage Accountant rather than calling these directly.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import ActorType, JobRecord, JobStatus, RateLimitRecord, UsageRecord

# Columns a status transition may write besides status itself
JOB_UPDATE_COLUMNS = frozenset({
    "model_used",
    "result_content",
    "error_message",
    "error_kind",
    "completed_at",
    "processing_duration_ms",
})

_JOB_COLUMNS = (
    "request_id, actor_id, session_id, label, prompt_text, status, model_used, "
    "result_content, error_message, error_kind, created_at, completed_at, "
    "processing_duration_ms"
)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    # Fixed precision keeps lexicographic order equal to time order
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the jobs, rate_limits and usage_tracking tables if missing.

    usage_tracking is an append-only ledger: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                request_id TEXT PRIMARY KEY,
                actor_id TEXT NOT NULL,
                session_id TEXT,
                label TEXT,
                prompt_text TEXT,
                status TEXT NOT NULL CHECK (
                    status IN ('queued', 'processing', 'completed', 'failed')
                ),
                model_used TEXT,
                result_content TEXT,
                error_message TEXT,
                error_kind TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                processing_duration_ms INTEGER
            );

            CREATE TABLE IF NOT EXISTS rate_limits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('authenticated', 'anonymous')),
                timestamp TEXT NOT NULL,
                request_count INTEGER NOT NULL CHECK (request_count >= 1)
            );

            CREATE INDEX IF NOT EXISTS idx_rate_limits_key_type_timestamp
                ON rate_limits (key, type, timestamp);

            CREATE TABLE IF NOT EXISTS usage_tracking (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                request_id TEXT NOT NULL UNIQUE REFERENCES jobs (request_id),
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                model_used TEXT NOT NULL,
                input_cost_estimate REAL NOT NULL,
                output_cost_estimate REAL NOT NULL,
                created_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_job(row: Tuple[Any, ...]) -> JobRecord:
    return JobRecord(
        request_id=row[0],
        actor_id=row[1],
        session_id=row[2],
        label=row[3],
        prompt_text=row[4],
        status=JobStatus(row[5]),
        model_used=row[6],
        result_content=row[7],
        error_message=row[8],
        error_kind=row[9],
        created_at=_from_text(row[10]),
        completed_at=_from_text(row[11]),
        processing_duration_ms=row[12],
    )


def insert_job(job: JobRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a new job record.

    Args:
        job: The job to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(f"""
            INSERT INTO jobs ({_JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            job.request_id,
            job.actor_id,
            job.session_id,
            job.label,
            job.prompt_text,
            job.status.value,
            job.model_used,
            job.result_content,
            job.error_message,
            job.error_kind,
            _to_text(job.created_at),
            _to_text(job.completed_at),
            job.processing_duration_ms,
        ))
        conn.commit()
    finally:
        conn.close()


def update_job_status(
    request_id: str,
    expected_status: JobStatus,
    new_status: JobStatus,
    values: Dict[str, Any],
    db_path: str = DEFAULT_DB_PATH
) -> bool:
    """Move a job to a new status if it is still in the expected status.

    The status check and the write are one conditional UPDATE, so two
    writers racing on the same job cannot both succeed.

    Args:
        request_id: Job identifier
        expected_status: Status the job must currently hold
        new_status: Status to write
        values: Extra columns to write, restricted to JOB_UPDATE_COLUMNS
        db_path: Path to SQLite database file

    Returns:
        True if the row was updated, False if the job was missing or had
        already moved on

    Raises:
        ValueError: If values names a column outside JOB_UPDATE_COLUMNS
    """
    unknown = set(values) - JOB_UPDATE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown job columns: {sorted(unknown)}")

    assignments = ["status = ?"]
    params: List[Any] = [new_status.value]
    for column in sorted(values):
        value = values[column]
        assignments.append(f"{column} = ?")
        params.append(_to_text(value) if isinstance(value, datetime) else value)
    params.extend([request_id, expected_status.value])

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"UPDATE jobs SET {', '.join(assignments)} WHERE request_id = ? AND status = ?",
            params
        )
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


def fetch_job(request_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[JobRecord]:
    """Fetch a single job by request id, or None if it does not exist."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE request_id = ?",
            (request_id,)
        ).fetchone()
        return _row_to_job(row) if row else None
    finally:
        conn.close()


def fetch_jobs(
    session_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[JobRecord]:
    """Fetch jobs, optionally filtered by session and actor.

    Returns:
        Jobs ordered by creation time (oldest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_JOB_COLUMNS} FROM jobs"
        params: List[Any] = []
        conditions = []

        if session_id:
            conditions.append("session_id = ?")
            params.append(session_id)
        if actor_id:
            conditions.append("actor_id = ?")
            params.append(actor_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)

        return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def increment_rate_limit(
    key: str,
    limit_type: ActorType,
    limit: int,
    now: datetime,
    window_start: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> Tuple[bool, RateLimitRecord]:
    """Atomically count one request against the active window for a key.

    Lookup, limit comparison and write run inside a single IMMEDIATE
    transaction, which takes the database write lock up front. A request
    that would exceed the limit is not counted.

    Args:
        key: Actor key
        limit_type: Actor type the window belongs to
        limit: Maximum requests allowed in the window
        now: Current time, used as the start of a new window
        window_start: Oldest window start still considered active
        db_path: Path to SQLite database file

    Returns:
        (accepted, record) where record reflects the stored window after
        the call
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("""
            SELECT id, timestamp, request_count
            FROM rate_limits
            WHERE key = ? AND type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            LIMIT 1
        """, (key, limit_type.value, _to_text(window_start))).fetchone()

        if row is None:
            cursor = conn.execute("""
                INSERT INTO rate_limits (key, type, timestamp, request_count)
                VALUES (?, ?, ?, 1)
            """, (key, limit_type.value, _to_text(now)))
            conn.commit()
            return True, RateLimitRecord(
                id=cursor.lastrowid,
                key=key,
                type=limit_type,
                timestamp=now,
                request_count=1
            )

        record_id, timestamp, request_count = row
        new_count = request_count + 1
        if new_count > limit:
            conn.rollback()
            return False, RateLimitRecord(
                id=record_id,
                key=key,
                type=limit_type,
                timestamp=_from_text(timestamp),
                request_count=request_count
            )

        conn.execute(
            "UPDATE rate_limits SET request_count = ? WHERE id = ?",
            (new_count, record_id)
        )
        conn.commit()
        return True, RateLimitRecord(
            id=record_id,
            key=key,
            type=limit_type,
            timestamp=_from_text(timestamp),
            request_count=new_count
        )
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_rate_limit(
    key: str,
    limit_type: ActorType,
    window_start: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> Optional[RateLimitRecord]:
    """Fetch the active window record for a key, if any."""
    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT id, key, type, timestamp, request_count
            FROM rate_limits
            WHERE key = ? AND type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            LIMIT 1
        """, (key, limit_type.value, _to_text(window_start))).fetchone()
        if row is None:
            return None
        return RateLimitRecord(
            id=row[0],
            key=row[1],
            type=ActorType(row[2]),
            timestamp=_from_text(row[3]),
            request_count=row[4]
        )
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a usage record to the cost ledger.

    Args:
        record: The usage record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_tracking
            (user_id, session_id, request_id, input_tokens, output_tokens,
             model_used, input_cost_estimate, output_cost_estimate, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.user_id,
            record.session_id,
            record.request_id,
            record.input_tokens,
            record.output_tokens,
            record.model_used,
            record.input_cost_estimate,
            record.output_cost_estimate,
            _to_text(record.created_at)
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_usage_records(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch usage records, optionally filtered by request and user.

    Returns:
        Usage records ordered by creation time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT user_id, session_id, request_id, input_tokens, output_tokens,
                   model_used, input_cost_estimate, output_cost_estimate, created_at
            FROM usage_tracking
        """
        params: List[Any] = []
        conditions = []

        if request_id:
            conditions.append("request_id = ?")
            params.append(request_id)
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        records = []
        for row in conn.execute(query, params).fetchall():
            records.append(UsageRecord(
                user_id=row[0],
                session_id=row[1],
                request_id=row[2],
                input_tokens=row[3],
                output_tokens=row[4],
                model_used=row[5],
                input_cost_estimate=row[6],
                output_cost_estimate=row[7],
                created_at=_from_text(row[8])
            ))
        return records
    finally:
        conn.close()
