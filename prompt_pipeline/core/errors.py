"""
Error taxonomy for the generation pipeline.

Every error carries a stable ``kind`` string that is persisted on failed
jobs so callers can tell "we didn't even try" apart from "we tried and
failed".
"""

import math
from datetime import datetime
from typing import Iterable, Optional, Tuple


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    kind = "pipeline_error"


class RateLimitExceeded(PipelineError):
    """Admission denied by the quota ledger before any model call."""
    kind = "rate_limit_exceeded"

    def __init__(self, message: str, remaining: int = 0, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.remaining = remaining
        self.reset_at = reset_at

    def retry_after_minutes(self, now: datetime) -> int:
        """Whole minutes until the quota window resets (never negative)."""
        if self.reset_at is None:
            return 0
        seconds = (self.reset_at - now).total_seconds()
        return max(0, math.ceil(seconds / 60))


class GenerationError(PipelineError):
    """The model produced no usable text."""
    kind = "generation_error"


class GenerationTimeout(GenerationError):
    """The per-prompt deadline passed before the model finished."""
    kind = "generation_timeout"


class ToolRoundsExceeded(GenerationError):
    """The model kept requesting tools past the round limit."""
    kind = "tool_rounds_exceeded"


class DependencyFailed(PipelineError):
    """A prompt was skipped because a prompt it depends on failed."""
    kind = "dependency_failed"

    def __init__(self, message: str, failed_indices: Iterable[int] = ()):
        super().__init__(message)
        self.failed_indices: Tuple[int, ...] = tuple(failed_indices)


class SecurityVerificationFailed(PipelineError):
    """The verification gate rejected the request (e.g. bot check)."""
    kind = "security_verification_failed"


class PersistenceError(PipelineError):
    """A Job Store, Quota Ledger or usage ledger write or read failed."""
    kind = "persistence_error"


class InvalidTransitionError(PipelineError):
    """A job status change would move backwards or out of a terminal state."""
    kind = "invalid_transition"


class JobNotFoundError(PipelineError):
    """No job exists for the given request id."""
    kind = "job_not_found"


class InvalidBatchError(PipelineError, ValueError):
    """A prompt batch is malformed (bad dependency index, empty prompt)."""
    kind = "invalid_batch"


def error_kind(error: BaseException) -> str:
    """Return the persisted kind for any exception."""
    if isinstance(error, PipelineError):
        return error.kind
    return GenerationError.kind
