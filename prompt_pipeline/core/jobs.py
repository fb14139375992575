"""
Durable job lifecycle tracking.

A job moves queued -> processing -> completed|failed, or straight from
queued to failed when it is rejected before the model is called. Status
never moves backwards.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, List, Optional

from prompt_pipeline.storage.db import DEFAULT_DB_PATH
from prompt_pipeline.storage.models import ALLOWED_TRANSITIONS, JobRecord, JobStatus
from prompt_pipeline.storage.repository import (
    JOB_UPDATE_COLUMNS,
    fetch_job,
    fetch_jobs,
    insert_job,
    update_job_status,
)

from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    error_kind,
)

logger = logging.getLogger(__name__)


class JobStore:
    """Creates jobs and enforces forward-only status transitions."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_path = db_path
        self._clock = clock or datetime.now

    def create(
        self,
        request_id: str,
        actor_id: str,
        session_id: Optional[str] = None,
        *,
        label: Optional[str] = None,
        prompt_text: Optional[str] = None,
        model_used: Optional[str] = None
    ) -> JobRecord:
        """Persist a new job in the queued state.

        Raises:
            PersistenceError: If the job cannot be written (including a
                duplicate request_id)
        """
        job = JobRecord(
            request_id=request_id,
            actor_id=actor_id,
            session_id=session_id,
            label=label,
            prompt_text=prompt_text,
            model_used=model_used,
            status=JobStatus.QUEUED,
            created_at=self._clock()
        )
        try:
            insert_job(job, self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to create job {request_id}: {e}") from e

        logger.debug("Job %s queued", request_id)
        return job

    def transition(self, request_id: str, status: JobStatus, **fields: Any) -> None:
        """Move a job forward to a new status.

        Terminal transitions stamp completed_at.

        Args:
            request_id: Job identifier
            status: Target status
            **fields: Columns to write alongside the status (model_used,
                result_content, error_message, error_kind,
                processing_duration_ms)

        Raises:
            ValueError: If fields names an unknown column
            JobNotFoundError: If no job has this request id
            InvalidTransitionError: If the move is not forward-only
            PersistenceError: If storage fails
        """
        unknown = set(fields) - (JOB_UPDATE_COLUMNS - {"completed_at"})
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        current = self.get(request_id)
        if current is None:
            raise JobNotFoundError(f"Job {request_id} not found")

        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f"Job {request_id} cannot move from {current.status.value} to {status.value}"
            )

        values = dict(fields)
        if status.is_terminal:
            values["completed_at"] = self._clock()

        try:
            updated = update_job_status(request_id, current.status, status, values, self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update job {request_id}: {e}") from e

        if not updated:
            # Another writer moved the job between our read and write
            raise InvalidTransitionError(
                f"Job {request_id} left {current.status.value} before moving to {status.value}"
            )

        logger.debug("Job %s %s -> %s", request_id, current.status.value, status.value)

    def fail(
        self,
        request_id: str,
        error: BaseException,
        processing_duration_ms: Optional[int] = None
    ) -> None:
        """Move a job to failed, recording the error message and kind."""
        fields: dict = {"error_message": str(error), "error_kind": error_kind(error)}
        if processing_duration_ms is not None:
            fields["processing_duration_ms"] = processing_duration_ms
        self.transition(request_id, JobStatus.FAILED, **fields)

    def get(self, request_id: str) -> Optional[JobRecord]:
        """Fetch a job by request id."""
        try:
            return fetch_job(request_id, self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read job {request_id}: {e}") from e

    def list_jobs(
        self,
        session_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 100
    ) -> List[JobRecord]:
        """List jobs oldest first, optionally filtered by session and actor."""
        try:
            return fetch_jobs(session_id=session_id, actor_id=actor_id, limit=limit, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list jobs: {e}") from e
