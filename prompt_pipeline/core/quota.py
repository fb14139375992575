"""
Sliding-window request quotas keyed by actor identity.

Authenticated actors are keyed by their user id. Anonymous actors are keyed
by a SHA-256 of ip, user agent and client fingerprint so no raw client data
is ever persisted.
"""

import hashlib
import json
import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Union

from prompt_pipeline.storage.db import DEFAULT_DB_PATH
from prompt_pipeline.storage.models import ActorType
from prompt_pipeline.storage.repository import increment_rate_limit

from .errors import PersistenceError

logger = logging.getLogger(__name__)

ClientFingerprint = Union[str, Mapping[str, Any], None]


def hash_value(value: str) -> str:
    """Return the hex SHA-256 digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _fingerprint_text(client_fingerprint: ClientFingerprint) -> str:
    if client_fingerprint is None or client_fingerprint == "":
        return "unknown"
    if isinstance(client_fingerprint, Mapping):
        return json.dumps(client_fingerprint, sort_keys=True, separators=(",", ":"))
    return str(client_fingerprint)


@dataclass(frozen=True)
class ActorIdentity:
    """Who a request is attributed to for quota and cost."""
    user_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    client_fingerprint: ClientFingerprint = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id and self.user_id.strip())

    @property
    def actor_type(self) -> ActorType:
        return ActorType.AUTHENTICATED if self.is_authenticated else ActorType.ANONYMOUS

    @property
    def key(self) -> str:
        """Stable quota key for this actor."""
        if self.is_authenticated:
            return self.user_id.strip()
        fingerprint = "-".join([
            self.ip or "unknown",
            self.user_agent or "unknown",
            _fingerprint_text(self.client_fingerprint),
        ])
        return hash_value(fingerprint)

    @property
    def actor_id(self) -> str:
        """Identity stored on jobs and usage records."""
        return self.key


@dataclass(frozen=True)
class QuotaPolicy:
    """Request limit over a rolling window."""
    limit: int
    window: timedelta

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a single admission check."""
    allowed: bool
    remaining: int
    reset_at: datetime

    def retry_after_minutes(self, now: datetime) -> int:
        """Whole minutes until the window resets (never negative)."""
        seconds = (self.reset_at - now).total_seconds()
        return max(0, math.ceil(seconds / 60))


class QuotaLedger:
    """Persisted sliding-window counters answering "is this request allowed now".

    Every check is a single atomic check-and-increment; a rejected request
    is never counted. Storage failures raise PersistenceError so callers
    fail closed.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_path = db_path
        self._clock = clock or datetime.now

    def check_and_increment(
        self,
        actor_key: str,
        actor_type: ActorType,
        limit: int,
        window: timedelta
    ) -> QuotaDecision:
        """Count one request against the actor's active window.

        Args:
            actor_key: Stable key from ActorIdentity.key
            actor_type: Authenticated or anonymous
            limit: Maximum requests per window
            window: Window length

        Returns:
            QuotaDecision; when rejected, remaining is 0 and reset_at is the
            end of the active window

        Raises:
            ValueError: If limit or window is not positive
            PersistenceError: If the ledger cannot be read or written
        """
        policy = QuotaPolicy(limit=limit, window=window)
        now = self._clock()
        window_start = now - policy.window

        try:
            accepted, record = increment_rate_limit(
                key=actor_key,
                limit_type=actor_type,
                limit=policy.limit,
                now=now,
                window_start=window_start,
                db_path=self.db_path
            )
        except sqlite3.Error as e:
            logger.error("Quota ledger unavailable for %s actor: %s", actor_type.value, e)
            raise PersistenceError(f"Failed to check rate limit: {e}") from e

        reset_at = record.timestamp + policy.window
        if not accepted:
            logger.warning(
                "Rate limit exceeded for %s actor (limit %d, resets at %s)",
                actor_type.value, policy.limit, reset_at.isoformat()
            )
            return QuotaDecision(allowed=False, remaining=0, reset_at=reset_at)

        remaining = policy.limit - record.request_count
        logger.debug("Quota accepted for %s actor, %d remaining", actor_type.value, remaining)
        return QuotaDecision(allowed=True, remaining=remaining, reset_at=reset_at)

    def check(self, actor: ActorIdentity, policy: QuotaPolicy) -> QuotaDecision:
        """Check an actor against a policy."""
        return self.check_and_increment(actor.key, actor.actor_type, policy.limit, policy.window)
