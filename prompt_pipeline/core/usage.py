"""
Usage accounting for completed generations.

Estimates tokens from text length, prices them and appends the result to
the usage ledger. Only called after a successful generation.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional

from prompt_pipeline.storage.db import DEFAULT_DB_PATH
from prompt_pipeline.storage.models import UsageRecord
from prompt_pipeline.storage.repository import insert_usage_record

from .errors import PersistenceError
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class UsageAccountant:
    """Computes and persists token and cost estimates per generation."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        pricing_table: PricingTable = PRICING_TABLE,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_path = db_path
        self.pricing_table = pricing_table
        self._clock = clock or datetime.now

    def estimate_and_record(
        self,
        request_id: str,
        model_used: str,
        prompt_text: str,
        result_text: str,
        *,
        user_id: str,
        session_id: Optional[str] = None
    ) -> UsageRecord:
        """Estimate usage for a completed job and append it to the ledger.

        Args:
            request_id: Job the usage belongs to
            model_used: Model that produced the result
            prompt_text: Text sent to the model
            result_text: Text the model returned
            user_id: Actor the cost is attributed to
            session_id: Session the job belongs to

        Returns:
            The persisted UsageRecord

        Raises:
            PersistenceError: If the record cannot be written
        """
        usage = TokenUsage.estimate(prompt_text, result_text)
        cost = calculate_cost(model_used, usage, self.pricing_table)

        record = UsageRecord(
            user_id=user_id,
            session_id=session_id,
            request_id=request_id,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            model_used=model_used,
            input_cost_estimate=cost.input_cost,
            output_cost_estimate=cost.output_cost,
            created_at=self._clock()
        )

        try:
            insert_usage_record(record, self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record usage for {request_id}: {e}") from e

        logger.info(
            "Usage recorded for %s - Input: %d, Output: %d, Cost: $%.6f",
            request_id, usage.prompt_tokens, usage.completion_tokens, cost.total_cost
        )
        return record
