"""
Data models for storage layer.

Defines the job, rate-limit and usage entities persisted by the pipeline.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional


class JobStatus(Enum):
    """Lifecycle states of a generation job."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Forward-only status graph; terminal states have no successors
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ActorType(Enum):
    """Kind of actor a quota window is attributed to."""
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class JobRecord:
    """Durable record of one generation request's lifecycle."""
    request_id: str
    actor_id: str
    status: JobStatus
    created_at: datetime
    session_id: Optional[str] = None
    label: Optional[str] = None
    prompt_text: Optional[str] = None
    model_used: Optional[str] = None
    result_content: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None


@dataclass(frozen=True)
class RateLimitRecord:
    """Sliding-window request counter for one (key, type) pair."""
    key: str
    type: ActorType
    timestamp: datetime
    request_count: int
    id: Optional[int] = None


@dataclass(frozen=True)
class UsageRecord:
    """Immutable cost ledger entry for one completed generation.

    Append-only: written once on successful completion and never modified.
    """
    user_id: str
    request_id: str
    input_tokens: int
    output_tokens: int
    model_used: str
    input_cost_estimate: float
    output_cost_estimate: float
    created_at: datetime
    session_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost_estimate(self) -> float:
        return round(self.input_cost_estimate + self.output_cost_estimate, 6)
